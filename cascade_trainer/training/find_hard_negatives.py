"""
Hard negative mining for the Cascade Trainer.

This module manufactures negative training samples that are hard enough to
survive every stage of the cascade trained so far. A fixed pool of worker
threads scans the background corpus, each through its own MiningCursor, and
tests every candidate patch against the cascade under training.

Key Features:
- Lock-free candidate generation and cascade testing
- A single critical section for appending accepted negatives and updating
  the shared mining statistics
- Soft shortfall: an exhausted corpus returns fewer negatives, never raises
- Optional JSON-lines mining log with a system snapshot per run

References:
- Chen, D., et al. (2014). Joint Cascade Face Detection and Alignment. ECCV.
- Felzenszwalb, P., et al. (2010). Object Detection with Discriminatively
  Trained Part Based Models. TPAMI (hard negative mining).

Author: Cascade Trainer Team
"""

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
from tqdm import tqdm

from ..data_preparation.utils import AtomicFileWriter, SystemMonitor
from .background import BackgroundCorpus
from .interfaces import CascadeEvaluator
from .mining_cursor import MiningCursor, ScanSettings

logger = logging.getLogger(__name__)


@dataclass
class MiningStatistics:
    """
    Shared mining counters.

    Only mutated through ``MiningSession.commit``/``flush``, which hold the
    session lock.
    """

    tested: int = 0
    accepted: int = 0
    ratio: float = 0.0
    per_worker_tested: Dict[int, int] = field(default_factory=dict)
    per_worker_accepted: Dict[int, int] = field(default_factory=dict)

    def record(self, worker_id: int, tested: int, accepted: int) -> None:
        self.tested += tested
        self.accepted += accepted
        self.per_worker_tested[worker_id] = self.per_worker_tested.get(worker_id, 0) + tested
        self.per_worker_accepted[worker_id] = self.per_worker_accepted.get(worker_id, 0) + accepted
        self.ratio = self.accepted / self.tested if self.tested else 0.0

    def as_dict(self) -> Dict[str, Any]:
        return {
            'tested': self.tested,
            'accepted': self.accepted,
            'ratio': self.ratio,
            'per_worker_tested': dict(self.per_worker_tested),
            'per_worker_accepted': dict(self.per_worker_accepted)
        }


class MiningSession:
    """
    Shared output of one ``generate`` call.

    Workers keep their count of rejected candidates locally and hand it over
    together with an accepted patch, so ``commit`` is the only place where
    workers contend.
    """

    def __init__(self, target: int, progress: Optional[tqdm] = None):
        self.target = target
        self.images: List[np.ndarray] = []
        self.scores: List[float] = []
        self.shapes: List[Optional[np.ndarray]] = []
        self.statistics = MiningStatistics()
        self._progress = progress
        self._lock = threading.Lock()
        self._done = threading.Event()
        if target <= 0:
            self._done.set()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def abort(self) -> None:
        self._done.set()

    def commit(self, worker_id: int, tested: int, patch: np.ndarray,
               score: float, shape: Optional[np.ndarray]) -> bool:
        """
        Append one accepted patch and flush the worker's tested count.

        Returns:
            False when the target was already reached and the patch was dropped
        """
        with self._lock:
            kept = self.statistics.accepted < self.target
            if kept:
                self.images.append(patch)
                self.scores.append(score)
                self.shapes.append(shape)
            self.statistics.record(worker_id, tested, 1 if kept else 0)
            if self.statistics.accepted >= self.target:
                self._done.set()
            if kept and self._progress is not None:
                self._progress.update(1)
        return kept

    def flush(self, worker_id: int, tested: int) -> None:
        with self._lock:
            self.statistics.record(worker_id, tested, 0)


@dataclass
class MiningResult:
    """Negatives mined by one ``generate`` call, in acceptance order."""

    requested: int
    accepted_count: int
    images: List[np.ndarray]
    scores: np.ndarray
    shapes: List[Optional[np.ndarray]]
    statistics: MiningStatistics
    exhausted: bool = False

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - self.accepted_count)


class HardNegativeMiner:
    """
    Parallel hard negative generator.

    Each worker thread owns one MiningCursor, repeatedly advances it and runs
    the candidate through ``cascade.test``. Rejected candidates never touch
    shared state. With ``mining.resume_scan`` enabled the cursors survive
    between calls, so the next round continues where the previous one stopped
    instead of re-testing the same windows.
    """

    def __init__(self, config, corpus: Optional[BackgroundCorpus] = None):
        """
        Initialize hard negative miner.

        Args:
            config: Configuration object with mining parameters
            corpus: Background corpus; an empty corpus when omitted
        """
        self.config = config
        self.corpus = corpus if corpus is not None else BackgroundCorpus()
        self.settings = ScanSettings.from_config(config)
        self.num_workers = int(config.get('mining.num_workers', 4))
        self.resume_scan = bool(config.get('mining.resume_scan', True))
        self.progress_bar = bool(config.get('mining.progress_bar', True))

        mining_log_file = config.get('mining.mining_log_file', None)
        self.mining_log_file = Path(mining_log_file) if mining_log_file else None

        if self.num_workers < 1:
            raise ValueError(f"mining.num_workers must be >= 1, got {self.num_workers}")

        self._cursors: List[MiningCursor] = []
        self.last_statistics: Optional[MiningStatistics] = None

        logger.info(f"Initialized hard negative miner: workers={self.num_workers}, "
                    f"window={self.settings.window_size}, step={self.settings.step}, "
                    f"scale_step={self.settings.scale_step}, transforms={list(self.settings.transforms)}")

    def load(self, manifests: Sequence) -> BackgroundCorpus:
        """
        Load the background corpus from manifests and restart the scan.

        Raises:
            FileNotFoundError: If a manifest cannot be opened
        """
        self.corpus = BackgroundCorpus.load(manifests, self.config)
        self.reset_cursors()
        return self.corpus

    def reset_cursors(self) -> None:
        """Forget scan positions; the next ``generate`` starts from the corpus start."""
        self._cursors = []

    def _worker_cursors(self) -> List[MiningCursor]:
        stale = (
            not self.resume_scan
            or len(self._cursors) != self.num_workers
            or any(cursor.corpus is not self.corpus for cursor in self._cursors)
        )
        if stale:
            self._cursors = [
                MiningCursor(self.corpus, self.settings, worker_id, self.num_workers)
                for worker_id in range(self.num_workers)
            ]
        return self._cursors

    def generate(self, cascade: CascadeEvaluator, target_count: int) -> MiningResult:
        """
        Mine up to ``target_count`` negatives that survive ``cascade``.

        The call returns when the target is reached or when every worker's
        cursor is exhausted. A shortfall is reported through the result and
        the log, never raised.

        Args:
            cascade: Cascade under training, tested concurrently
            target_count: Number of negatives wanted

        Returns:
            MiningResult with the accepted patches, their scores and shapes

        Raises:
            BackgroundImageError: If a background image cannot be decoded
        """
        target_count = max(0, int(target_count))
        start_time = time.time()

        if target_count == 0:
            logger.debug("No negatives requested, skipping mining")
            statistics = MiningStatistics()
            self.last_statistics = statistics
            return MiningResult(0, 0, [], np.zeros(0, dtype=np.float64), [], statistics)

        cursors = self._worker_cursors()
        logger.info(f"Mining {target_count} hard negatives with {len(cursors)} workers "
                    f"over {len(self.corpus)} backgrounds and {len(self.corpus.hard_reserve)} reserved patches")

        with tqdm(total=target_count, desc="Mining hard negatives", unit="neg",
                  disable=not self.progress_bar, leave=False) as progress:
            session = MiningSession(target_count, progress)
            with ThreadPoolExecutor(max_workers=len(cursors), thread_name_prefix="neg-miner") as executor:
                futures = [executor.submit(self._mine_worker, cursor, cascade, session) for cursor in cursors]
                exhausted = [future.result() for future in futures]

        statistics = session.statistics
        self.last_statistics = statistics
        result = MiningResult(
            requested=target_count,
            accepted_count=len(session.images),
            images=session.images,
            scores=np.asarray(session.scores, dtype=np.float64),
            shapes=session.shapes,
            statistics=statistics,
            exhausted=all(exhausted)
        )

        elapsed = time.time() - start_time
        logger.info(f"Mined {result.accepted_count}/{target_count} hard negatives in {elapsed:.1f}s: "
                    f"tested {statistics.tested} patches, acceptance ratio {statistics.ratio:.6f}, "
                    f"{self.report_background_images_used()} backgrounds used")
        if result.shortfall:
            logger.warning(f"Background corpus exhausted: {result.shortfall} of {target_count} "
                           f"requested negatives could not be mined")

        if self.mining_log_file is not None:
            self._log_mining_results(result, elapsed)

        return result

    def _mine_worker(self, cursor: MiningCursor, cascade: CascadeEvaluator,
                     session: MiningSession) -> bool:
        """Run one cursor until the session is done; returns whether it ran dry."""
        tested = 0
        try:
            while not session.done:
                patch = cursor.advance()
                if patch is None:
                    break
                tested += 1
                result = cascade.test(patch)
                if not result.survives:
                    continue
                shape = None if result.shape is None else np.array(result.shape, dtype=np.float64)
                session.commit(cursor.worker_id, tested, patch, float(result.score), shape)
                tested = 0
        except Exception as e:
            logger.error(f"Mining worker {cursor.worker_id} failed at {cursor}: {e}")
            session.abort()
            raise
        finally:
            session.flush(cursor.worker_id, tested)
        return cursor.exhausted

    def report_background_images_used(self) -> int:
        """
        Number of background images opened by the current cursors.

        Advisory only: it is read without locking while workers may still run.
        """
        return sum(cursor.images_used for cursor in self._cursors)

    def _log_mining_results(self, result: MiningResult, elapsed: float) -> None:
        """
        Append one JSON line describing the mining run.

        Args:
            result: Result of the finished run
            elapsed: Wall time in seconds
        """
        entry = {
            'timestamp': datetime.now().isoformat(),
            'requested': result.requested,
            'accepted': result.accepted_count,
            'exhausted': result.exhausted,
            'elapsed_seconds': elapsed,
            'backgrounds_used': self.report_background_images_used(),
            'statistics': result.statistics.as_dict(),
            'scan_parameters': {
                'num_workers': self.num_workers,
                'window_size': self.settings.window_size,
                'step': self.settings.step,
                'scale_step': self.settings.scale_step,
                'max_scales': self.settings.max_scales,
                'transforms': list(self.settings.transforms)
            },
            'system_info': SystemMonitor.get_system_info()
        }

        with AtomicFileWriter.atomic_write(self.mining_log_file, 'a') as f:
            f.write(json.dumps(entry) + '\n')

        logger.debug(f"Mining results logged to {self.mining_log_file}")

"""
Setup script for Cascade Trainer.

This setup script configures the project for installation and distribution.

Author: Cascade Trainer Team
Date: October 2026
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description
def read_readme():
    readme_path = Path(__file__).parent / "README.md"
    if readme_path.exists():
        with open(readme_path, "r", encoding="utf-8") as fh:
            return fh.read()
    return "Cascade Trainer - hard negative mining and training set bookkeeping for joint cascade face detection"

# Read requirements
def read_requirements():
    requirements_path = Path(__file__).parent / "requirements.txt"
    if requirements_path.exists():
        with open(requirements_path, "r", encoding="utf-8") as fh:
            return [
                line.strip()
                for line in fh
                if line.strip() and not line.startswith("#") and not line.startswith("--")
            ]
    return []

# Read version from package without importing its dependencies
def get_version():
    """Extract version from package."""
    init_path = Path(__file__).parent / "cascade_trainer" / "__init__.py"
    for line in init_path.read_text(encoding="utf-8").splitlines():
        if line.startswith("__version__"):
            return line.split("=")[1].strip().strip('"\'')
    return "1.0.0"

setup(
    name="cascade-trainer",
    version=get_version(),
    author="Cascade Trainer Team",
    author_email="contact@example.com",
    description="Hard negative mining and training set management for joint cascade face detection and alignment",
    long_description=read_readme(),
    long_description_content_type="text/markdown",

    # Package configuration
    packages=find_packages(include=["cascade_trainer", "cascade_trainer.*"]),

    # Dependencies
    python_requires=">=3.8",
    install_requires=read_requirements(),

    # Optional dependencies for different use cases
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-cov>=4.1.0",
            "pytest-timeout>=2.1.0",
        ],
    },

    # Entry points for command-line tools
    entry_points={
        "console_scripts": [
            "cascade-trainer-build-dataset=cascade_trainer.data_preparation.build_dataset:main",
            "cascade-trainer-dump=cascade_trainer.training.checkpoint:main",
        ],
    },

    # Package metadata
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Image Recognition",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Operating System :: POSIX",
    ],

    # Keywords for searchability
    keywords=[
        "computer-vision", "face-detection", "face-alignment", "boosted-cascade",
        "hard-negative-mining", "reproducible-science"
    ],

    zip_safe=False,
    license="MIT",
)

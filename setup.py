#!/usr/bin/env python3
"""
Setup configuration for Ingress Uploader.

Install for development with:
    pip install -e ".[test]"
"""
from pathlib import Path

from setuptools import find_packages, setup

# Read README for long description
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""

setup(
    name="ingress-uploader",
    version="1.0.0",
    description="Periodic uploader of diagnostic archives to an ingress endpoint",
    long_description=long_description,
    long_description_content_type="text/markdown",
    # Package discovery
    packages=find_packages(where=".", exclude=["tests", "tests.*"]),
    package_dir={"": "."},
    # Python version requirement
    python_requires=">=3.10",
    # Runtime dependencies
    install_requires=[
        "requests>=2.31.0",
        "urllib3>=2.3.0",
        "watchdog>=3.0.0",
        "boto3>=1.28.0",
        "pyyaml>=6.0",
    ],
    # Optional dependencies
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-cov>=4.1.0",
            "pytest-mock>=3.11.0",
        ],
        "dev": [
            "black>=23.0.0",
            "flake8>=6.0.0",
            "pylint>=2.17.0",
            "isort>=5.12.0",
            "pre-commit>=3.3.0",
        ],
    },
    # Entry points
    entry_points={
        "console_scripts": [
            "ingress-uploader=ingress_uploader.main:main",
        ],
    },
    # Classifiers
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Operating System :: POSIX :: Linux",
        "Topic :: System :: Monitoring",
        "Topic :: Internet :: WWW/HTTP",
    ],
    # Include non-Python files
    include_package_data=True,
)

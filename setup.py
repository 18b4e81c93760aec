#!/usr/bin/env python3
"""
otel-job-sidecar - Setup configuration
"""
from setuptools import setup, find_packages
from pathlib import Path

# Read requirements
requirements = []
with open("requirements.txt") as f:
    for line in f:
        line = line.strip()
        if line and not line.startswith("#"):
            requirements.append(line)

# Read README for long description
readme_file = Path("README.md")
long_description = readme_file.read_text() if readme_file.exists() else ""

setup(
    name="otel-job-sidecar",
    version="0.1.0",
    description="OpenTelemetry sidecar for CI jobs: collect, upload and summarize telemetry signals",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="otel-job-sidecar",
    license="MIT",
    python_requires=">=3.9",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=requirements,
    extras_require={
        "test": [
            "pytest>=7.0",
            "duckdb>=1.3",
        ],
    },
    entry_points={
        "console_scripts": [
            "otel-job-sidecar=sidecar.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)

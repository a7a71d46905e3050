#!/usr/bin/env python3
"""
Velociraptor Packager Setup Script
"""

from pathlib import Path
from setuptools import find_packages, setup

# Read README
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text(encoding="utf-8") if readme_file.exists() else ""

# Read requirements
requirements_file = Path(__file__).parent / "requirements.txt"
requirements = []
if requirements_file.exists():
    requirements = [
        line.strip()
        for line in requirements_file.read_text().splitlines()
        if line.strip() and not line.startswith("#")
    ]

setup(
    name="velociraptor-packager",
    version="0.1.0",
    description="Bundle Velociraptor artifacts and their third-party tools into deployment packages",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="Velociraptor Packager Contributors",
    license="MIT",

    # Packages
    packages=find_packages(include=["velociraptor_packager", "velociraptor_packager.*"]),
    include_package_data=True,

    # Requirements
    python_requires=">=3.10",
    install_requires=requirements,

    # Optional dependencies
    extras_require={
        "dev": [
            "pytest>=7.0",
            "pytest-cov>=4.0",
        ],
    },

    # Entry points
    entry_points={
        "console_scripts": [
            "velociraptor-packager=velociraptor_packager.cli:cli",
        ],
    },

    # Package data
    package_data={
        "velociraptor_packager": [
            "packaging/templates/*.j2",
            "reporting/templates/*.html",
        ],
    },

    # Classifiers
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Information Technology",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Security",
        "Topic :: System :: Systems Administration",
    ],

    # Keywords
    keywords="velociraptor dfir artifacts packaging incident-response",
)

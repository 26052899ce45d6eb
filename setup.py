"""Setup script for extforge.

This script installs the extforge build pipeline and its dependencies.
"""

from __future__ import annotations

import setuptools

# Read the long description from README.md
with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

# Read version from __version__.py
version = {}
with open("extforge/__version__.py", "r", encoding="utf-8") as f:
    exec(f.read(), version)

# Dependencies
install_requires = [
    "pydantic>=2.0.0",
    "pyyaml>=6.0",
    "structlog>=22.1.0",
    "httpx>=0.24.0",
    "tenacity>=8.2.0",
    "python-json-logger>=2.0.4",
    "cryptography>=42.0.0",
    "asn1crypto>=1.5.0",
]

# Development dependencies
dev_requires = [
    "pytest>=7.0.0",
    "pytest-cov>=4.0.0",
    "black>=23.1.0",
    "isort>=5.12.0",
    "mypy>=1.0.0",
    "types-pyyaml",
]

# Build dependencies
build_requires = [
    "wheel>=0.38.0",
    "setuptools>=65.5.0",
]

setuptools.setup(
    name="extforge",
    version=version.get("__version__", "0.1.0"),
    author="extforge contributors",
    description="Build, sign and publish monitoring extensions",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=setuptools.find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX",
    ],
    python_requires=">=3.10",
    install_requires=install_requires,
    extras_require={
        "dev": dev_requires,
        "build": build_requires,
        "all": dev_requires + build_requires,
    },
    entry_points={
        "console_scripts": [
            "extforge=extforge.pipeline.cli:main",
        ],
    },
)

#!/usr/bin/env python3

from setuptools import setup
import os

# Read long description safely
long_description = "nftables IP blacklist synchronizer for remote threat intelligence lists"
if os.path.exists("README.md"):
    with open("README.md", "r", encoding="utf-8") as f:
        long_description = f.read()

setup(
    name="nft-blacklist",
    version="1.0.0",
    description="nftables IP blacklist synchronizer for remote threat intelligence lists",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=["nft_blacklist", "nft_client"],
    python_requires=">=3.8",
    install_requires=[
        "requests>=2.25.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "nft-blacklist=nft_blacklist:main",
        ],
    },
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Topic :: System :: Networking :: Firewalls",
        "Topic :: Security",
    ],
)

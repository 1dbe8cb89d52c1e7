"""
Model Lifecycle
Setup script for the model_lifecycle package

This package fetches, caches, validates and refreshes a single inference
model asset behind a ref-counted handle.
"""

from setuptools import setup, find_packages

setup(
    name="model-lifecycle",
    version="0.1.0",
    description="Single-asset model fetch, cache and refresh lifecycle manager",
    python_requires=">=3.10",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "aiohttp>=3.8.0",
        "loguru>=0.6.0",
        "numpy>=1.20.0",
        "PyYAML>=5.4.0",
    ],
    extras_require={
        "onnx": [
            "onnxruntime>=1.14.0",
        ],
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "model-lifecycle=model_lifecycle.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)

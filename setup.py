"""
Setup configuration for the scalper package.
"""
from setuptools import setup, find_packages

setup(
    name="scalper",
    version="0.1.0",
    description="Scalping bot with stop-loss and trailing-stop exits for spot exchanges",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    author="Trading System Team",
    license="MIT",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "requests>=2.28.0,<3.0",
        "urllib3>=1.26.0,<3.0",
        "pyyaml>=6.0,<7.0",
        "loguru>=0.7.0,<1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-asyncio>=0.21.0",
        ],
        "dev": [
            "black>=23.0.0,<24.0",
            "ruff>=0.1.0,<1.0",
            "mypy>=1.0.0,<2.0",
            "isort>=5.12.0,<6.0",
            "pytest-cov>=4.0.0,<5.0",
            "pre-commit>=3.0.0,<4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "scalper=scalper.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
)

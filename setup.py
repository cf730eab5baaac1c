"""
Setup script for sandbox-bridge
"""

from setuptools import setup, find_packages
import pathlib

# Read the README file
HERE = pathlib.Path(__file__).parent
README = (HERE / "README.md").read_text(encoding="utf-8")

setup(
    name="sandbox-bridge",
    version="0.1.0",
    description="Run source code in an isolated worker over an id-correlated message channel",
    long_description=README,
    long_description_content_type="text/markdown",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    include_package_data=True,
    python_requires=">=3.10",
    install_requires=[
        "psutil>=5.9",
        "pydantic>=2.5,<3",
        "pydantic-settings>=2.1",
        "pyyaml>=6.0.1",
        "structlog>=23.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
        ],
    },
    entry_points={
        "console_scripts": [
            "sandbox-bridge=sandbox_bridge.cli.main:entry_point",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: POSIX",
        "License :: OSI Approved :: MIT License",
    ],
    keywords="sandbox code-execution worker asyncio",
)

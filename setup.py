"""Package metadata for uks (file-resident knowledge graph)."""

from setuptools import find_packages, setup

setup(
    name="uks",
    version="0.1.0",
    description="File-resident knowledge graph with cross-process locking, undo and vector search",
    python_requires=">=3.11",
    package_dir={"": "src"},
    packages=find_packages("src"),
    install_requires=[
        "click>=8.1",
        "numpy>=1.26",
        "rich>=13.0",
        "diskcache>=5.6",
        "fastembed>=0.3",
    ],
    extras_require={
        "gemini": ["google-genai>=1.0"],
        "test": ["pytest>=8.0"],
    },
    entry_points={
        "console_scripts": ["uks=uks.cli:main"],
    },
)

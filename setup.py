from pathlib import Path

from setuptools import find_packages, setup

ROOT = Path(__file__).parent.resolve()

setup(
    name="deltaloss",
    version="0.1.0",
    description="Logistic loss gradients and diagonal Hessians for block coordinate descent",
    long_description=(ROOT / "DESIGN.md").read_text() if (ROOT / "DESIGN.md").exists() else "",
    long_description_content_type="text/markdown",
    packages=find_packages(include=["deltaloss", "deltaloss.*"]),
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.23",
        "torch>=2.0",
    ],
    extras_require={
        "test": ["pytest>=7", "pandas>=1.5"],
        "examples": ["scikit-learn>=1.2"],
    },
)

"""Setup configuration for gwaskin package"""

from setuptools import setup, find_packages

setup(
    name="gwaskin",
    version="0.1.0",
    author="gwaskin Development Team",
    description="Kinship-corrected GWAS: GCTA kinship, PSD repair, P3D mixed model and naive GLM scans",
    long_description=open("README.md").read() if __import__("os").path.exists("README.md") else "",
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=("tests", "tests.*")),
    install_requires=[
        "numpy>=1.19.0",
        "scipy>=1.6.0",
        "pandas>=1.2.0",
        "numba>=0.50.0",
        "joblib>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=6.0",
            "statsmodels>=0.12.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "gwaskin=gwaskin.cli.utils:main",
        ],
    },
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
    ],
)

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="conosplot",
    version="0.1.0",
    description="conosplot: plots for joint analyses of multiple single-cell samples",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*", "examples"]),
    python_requires=">=3.8",
    install_requires=[
        "scanpy>=1.9",
        "numpy>=1.21",
        "pandas>=1.4",
        "matplotlib>=3.5",
        "seaborn>=0.12",
        "scipy>=1.9",
        "scikit-learn>=1.1",
        "anndata>=0.8",
        "tqdm",
    ],
    extras_require={
        "test": ["pytest>=7"],
    },
    entry_points={
        "console_scripts": [
            "conosplot=conosplot.cli:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Topic :: Scientific/Engineering :: Bio-Informatics",
        "Intended Audience :: Science/Research",
    ],
)

from setuptools import setup, find_packages

setup(
    name="refit_reco",
    version="0.1.0",
    description="Track refit and state extraction: measurement building, Kalman refit, DCA and disabled-layer states",
    author="Your Name",
    author_email="your.email@example.com",
    packages=find_packages(include=["refit_reco", "refit_reco.*"]),
    python_requires=">=3.10",
    install_requires=[
        # Runtime dependencies
        "numpy",
        "pandas",
        "matplotlib",
        "scipy",
        "orjson",
    ],
    extras_require={
        # Developer extras
        "dev": [
            "pytest",
            "black",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            # CLI entry point for running main.py
            "refit-reco=refit_reco.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
)

from setuptools import setup, find_packages

setup(
    name="multicurve_engine",
    version="0.1.0",
    description="Multi-curve calibration engine with quote sensitivities",
    packages=find_packages(exclude=("tests", "tests.*")),
    install_requires=[
        "numpy",
        "pandas",
        "scipy",
    ],
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.8",
)

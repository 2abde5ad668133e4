from setuptools import find_packages, setup

setup(
    name="alnfit",
    version="0.1.0",
    description="Adaptive logic network fitting with noise-driven growth and decision-tree export",
    packages=find_packages(exclude=("tests", "tests.*", "examples", "examples.*")),
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.25",
        "torch",
        "pandas",
        "scikit-learn",
    ],
    extras_require={"test": ["pytest"]},
)

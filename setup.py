from setuptools import find_packages, setup


setup(
    name="mlgraph",
    version="0.1.0",
    description="Compute-graph engine: typed graph builder -> immutable compiled graph -> validated async execution",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
    ],
    extras_require={
        "dev": [
            "pytest>=7",
        ],
    },
    zip_safe=False,
)

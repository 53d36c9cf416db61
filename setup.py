from setuptools import find_packages, setup

setup(
    name="inccal",
    version="0.1.0",
    description="Incremental least-squares calibration with observability analysis",
    license="BSD",
    packages=find_packages("src"),
    package_dir={"": "src"},
    package_data={"inccal": ["py.typed"]},
    python_requires=">=3.10",
    install_requires=[
        "numpy",
        "scipy",
        "jax>=0.4.20",
        "jaxlib",
        "jaxlie>=1.0.0",
        "jax_dataclasses>=1.0.0",
        "overrides",
        "loguru",
        "termcolor",
        "rich",
    ],
    extras_require={
        "cholmod": [
            "scikit-sparse",
        ],
        "examples": [
            "tyro",
        ],
        "testing": [
            "pytest",
            "pytest-cov",
        ],
        "type-checking": [
            "mypy",
            "types-termcolor",
        ],
    },
)

from setuptools import setup, find_packages

setup(
    name="store-edge-hub",
    version="0.1.0",
    description="On-premise edge hub for store terminals: offline sync queue, check locks and package deployment",
    author="Matt Skillman",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.9",
    install_requires=[
        "Flask>=3.0",
        "Flask-SQLAlchemy>=3.1",
        "SQLAlchemy>=2.0",
        "APScheduler>=3.10,<4",
        "PyYAML>=6.0",
        "pyzmq>=25.0",
        "requests>=2.31.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "black>=23.0.0",
            "pylint>=2.17.0",
        ],
        "test": [
            "pytest>=7.4.0",
        ],
    },
)

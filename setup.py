from setuptools import setup, find_packages

setup(
    name="bell-dispatch",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "fastapi",
        "uvicorn",
        "redis",
        "pydantic",
        "pydantic-settings",
        "python-dotenv",
        "celery",
        "kombu",
        "prometheus-client",
        "prometheus-fastapi-instrumentator",
        "firebase-admin",
        "pywebpush",
        "python-dateutil",
    ],
    extras_require={
        "test": [
            "pytest",
            "httpx",
            "freezegun",
        ],
    },
)

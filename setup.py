from setuptools import setup, find_packages

setup(
    name="eduportal",
    version="0.1.0",
    packages=find_packages(include=["portal", "portal.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi",
        "starlette",
        "pydantic>=2",
        "pydantic-settings",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
        ],
    },
)

from setuptools import setup, find_packages

setup(
    name="admission-gateway",
    version="0.1.0",
    packages=find_packages(include=["admission", "admission.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "starlette",
        "pydantic>=2.6",
        "pydantic-settings>=2.7",
        "redis>=5.0.1",
    ],
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
            "httpx",
            "fakeredis[lua]",
        ],
    },
)

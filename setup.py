from setuptools import setup, find_packages

setup(
    name="alkindix-edge",
    version="0.1.0",
    packages=find_packages(include=["edge", "edge.*"]),
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "pydantic>=2.5",
        "pydantic-settings>=2.7",
        "httpx>=0.27",
        "redis>=5.0",
        "uvicorn>=0.29",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "respx>=0.21",
        ],
    },
)

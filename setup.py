from setuptools import setup, find_packages

setup(
    name="apilayer",
    version="0.1.0",
    description="Resilient API access layer: token refresh, tiered caching, rate limiting and retries",
    packages=find_packages(include=["apilayer", "apilayer.*"]),
    python_requires=">=3.11",
    install_requires=[
        "httpx>=0.27",
        "pydantic>=2.5",
        "pydantic-settings>=2.3",
        "redis>=5.0",
    ],
    extras_require={
        "test": [
            "pytest>=8.0",
            "pytest-asyncio>=0.23",
            "respx>=0.21",
        ],
    },
)

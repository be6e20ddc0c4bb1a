"""
Affiliate Engine - affiliate program service for a creator marketplace
"""

from setuptools import setup, find_namespace_packages

setup(
    name="affiliate-engine",
    version="1.0.0",
    description="Affiliate accounts, click attribution, competitions and payouts",
    author="Bashirov",
    python_requires=">=3.11",
    packages=find_namespace_packages(include=["shared*", "affiliate_api*"]),
    install_requires=[
        "fastapi>=0.104.0",
        "uvicorn[standard]>=0.24.0",
        "sqlalchemy[asyncio]>=2.0.0",
        "asyncpg>=0.29.0",
        "redis>=5.0.0",
        "python-dotenv>=1.0.0",
        "pydantic>=2.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
            "aiosqlite>=0.19.0",
            "httpx>=0.25.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "affiliate-api=affiliate_api.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Programming Language :: Python :: 3.11",
    ],
)

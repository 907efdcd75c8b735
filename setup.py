"""
Setup script for mfa_service.
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="mfa-service",
    version="1.0.0",
    author="StocksBlitz",
    author_email="support@stocksblitz.com",
    description="Multi-factor authentication service: TOTP, SMS and email codes, backup codes",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/raghurammutya/ML",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Security",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    python_requires=">=3.9",
    install_requires=[
        "fastapi>=0.104.0,<0.137",
        "uvicorn[standard]>=0.24.0",
        "sqlalchemy>=2.0.0",
        "psycopg2-binary>=2.9.0",
        "pydantic>=2.0.0",
        "pydantic-settings>=2.0.0",
        "redis>=5.0.0",
        "pyotp>=2.9.0",
        "qrcode[pil]>=7.4.0",
        "prometheus-client>=0.19.0",
        "httpx>=0.25.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "httpx>=0.25.0",
        ],
    },
    keywords="mfa, totp, two-factor, authentication, backup-codes",
    project_urls={
        "Source": "https://github.com/raghurammutya/ML",
    },
)

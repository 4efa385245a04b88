"""
Setup script for the crm-pdf-generator project.

Allows development installation with `pip install -e .`
"""

import re
from pathlib import Path

from setuptools import setup, find_packages

VERSION = re.search(
    r'^__version__ = "([^"]+)"',
    (Path(__file__).parent / "version.py").read_text(),
    re.MULTILINE,
).group(1)

setup(
    name="crm-pdf-generator",
    version=VERSION,
    packages=find_packages(include=["render_service*", "generator_service*"]),
    py_modules=["version"],
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.110",
        "uvicorn[standard]>=0.27",
        "pydantic>=2.5",
        "pydantic-settings>=2.1",
        "redis>=5.0",
        "playwright>=1.40",
        "tenacity>=8.2",
        "boto3>=1.34",
        "python-dotenv>=1.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.23",
            "httpx>=0.25",
        ],
    },
)

"""Setup file for the carbon exchange backend"""
from setuptools import setup, find_packages

setup(
    name="carbon-exchange",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "flask>=3.0.0",
        "flask-cors>=4.0.0",
        "python-dotenv>=1.0.0",
        "pymongo>=4.6",
        "xrpl-py>=2.4.0",
        "reportlab>=4.0",
        "qrcode[pil]>=7.4",
        "requests>=2.31",
        "google-genai>=1.0",
        "click>=8.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
        ],
    },
)

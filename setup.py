"""
Session Capture Orchestrator
Setup script for the session_capture package

Synchronized capture of Zigbee sensor traffic (MQTT) and RTSP camera
video (ffmpeg) into research sessions, with archive export.
"""

from setuptools import setup, find_packages

setup(
    name="session-capture",
    version="0.1.0",
    description="Session Capture Orchestrator for sensor and camera research sessions",
    author="Session Capture Team",
    python_requires=">=3.9",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "fastapi>=0.100.0",
        "uvicorn>=0.22.0",
        "pydantic>=2.0.0",
        "loguru>=0.7.0",
        "PyYAML>=5.4.0",
        "paho-mqtt>=2.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "httpx>=0.24.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "session-capture=session_capture.__main__:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)

from setuptools import setup

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="instagram-archive-importer",
    version="1.0.0",
    description="FastAPI service that imports Instagram data exports into a media catalog",
    long_description=long_description,
    long_description_content_type="text/markdown",
    py_modules=[
        "catalog",
        "config",
        "discovery",
        "errors",
        "extractors",
        "jobs",
        "linker",
        "main",
        "models",
        "orchestrator",
        "resolver",
        "runner",
        "uploader",
    ],
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Multimedia",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
    ],
    python_requires=">=3.11",
    install_requires=[
        "fastapi>=0.104.1",
        "uvicorn[standard]>=0.24.0",
        "python-multipart>=0.0.6",
        "pydantic>=2.5.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "httpx>=0.25",
            "requests>=2.31",
        ],
    },
    entry_points={
        "console_scripts": [
            "ig-archive-import=main:main",
        ],
    },
)

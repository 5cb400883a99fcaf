from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

setup(
    name="mailroom",
    version="0.1.0",
    author="Laurence Stephan",
    author_email="your.email@example.com",
    description="A Flask email campaign delivery engine: scheduling, quiet hours, retries, bounce handling and analytics",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/yourusername/mailroom",
    packages=find_packages(include=["mailroom", "mailroom.*"]),
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "Topic :: Communications :: Email",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Framework :: Flask",
    ],
    python_requires=">=3.8",
    install_requires=[
        "Flask>=3.0.0",
        "python-dotenv>=1.0.0",
        "requests>=2.28.0",
        "resend>=2.0",
        "pytz>=2023.3",
    ],
    extras_require={
        "ses": [
            "boto3>=1.26",
        ],
        "dev": [
            "pytest>=7.0",
            "pytest-flask>=1.2",
            "black>=22.0",
            "flake8>=5.0",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)

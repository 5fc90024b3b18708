from setuptools import setup, find_packages

setup(
    name="ibosh",
    version="0.1.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "pydantic>=2.0",
        "pyyaml>=6.0",
        "click>=8.0",
        "tenacity>=8.0",
        "python-dotenv>=1.0",
        "jinja2>=3.0",
        "docker>=6.0",
        "oras>=0.2",
        "requests>=2.28",
        "urllib3>=1.26",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ibosh=ibosh.CLI.main:main",
        ],
    },
)

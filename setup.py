from setuptools import setup, find_packages

setup(
    name="warprelease",
    version="0.1.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    include_package_data=True,
    install_requires=[
        "rich",
        "requests",
        "python-dotenv",
        "toml",
    ],
    extras_require={
        "test": ["pytest"],
    },
)

from setuptools import setup, find_packages

setup(
    name="ocflstore",
    version="1.0",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    install_requires=["pyyaml"],
    extras_require={"test": ["pytest"]},
)

import os
from setuptools import setup, find_packages

# Read the version from the package
with open(os.path.join("src", "umh_link", "__init__.py"), "r") as f:
    for line in f:
        if line.startswith("__version__"):
            exec(line)
            break

# Read long description from README
with open("README.md", "r", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="umh_link",
    version=__version__,
    description="Host-side serial protocol, port discovery and control for the UMH device",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    install_requires=[
        "pyserial>=3.5",
        "typeguard>=4.0.0",
        "tqdm>=4.65.0",
    ],
    extras_require={
        "tests": [
            "pytest>=7.0",
        ],
    },
    python_requires=">=3.8",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Operating System :: Microsoft :: Windows",
        "Operating System :: POSIX :: Linux",
        "Intended Audience :: Developers",
        "Topic :: System :: Hardware",
        "Topic :: Utilities",
    ],
    entry_points={
        "console_scripts": [
            "umh-link=umh_link.cli:main",
        ],
    },
)

import re
import pathlib
from setuptools import setup, find_packages


BASE_PATH = pathlib.Path(__file__).parent
try:
    version = re.findall(r"""^__version__ = "([^']+)"\r?$""",
                         (BASE_PATH / "src" / "embedftp" / "__init__.py").read_text(),
                         re.M)[0]
except IndexError:
    raise RuntimeError("Unable to determine version.")


setup(
    name="embedftp",
    version=version,
    description=("embeddable threaded ftp server"),
    long_description=(BASE_PATH / "README.rst").read_text(),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Topic :: Internet :: File Transfer Protocol (FTP)",
    ],
    license="Apache 2",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=" >= 3.9",
    install_requires=[
        "typing_extensions; python_version < '3.11'",
    ],
    extras_require={
        "tests": [
            "pytest",
            "pytest-mock",
            "trustme",
        ],
    },
    include_package_data=True
)

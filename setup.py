import re

from setuptools import setup, find_packages

classifiers = [
    "Development Status :: 3 - Alpha",
    "Operating System :: POSIX",
    "Programming Language :: Python",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3.8",
    "Programming Language :: Python :: 3.9",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "License :: OSI Approved :: MIT License",
    "Intended Audience :: Science/Research",
    "Topic :: Scientific/Engineering :: Bio-Informatics",
    "Topic :: Scientific/Engineering :: Chemistry",
    "Topic :: Software Development :: Libraries",
]

keywords = [
    "dataflow", "workflow", "asyncio", "proteomics", "mass-spectrometry", "fdr"
]


def get_version():
    with open("ddaflow/__init__.py") as f:
        for line in f.readlines():
            m = re.match("__version__ = '([^']+)'", line)
            if m:
                return m.group(1)
        raise IOError("Version information can not found.")


def get_long_description():
    with open("README.md") as f:
        readme = f.read()
    # remove html tag
    return re.sub("<.*>", '', readme)


setup(
    name='ddaflow',
    version=get_version(),
    license='MIT',
    description="A dataflow engine running target/decoy FDR controlled DDA proteomics pipelines",
    long_description=get_long_description(),
    long_description_content_type='text/markdown',
    keywords=keywords,
    packages=find_packages(exclude=['tests', 'tests.*']),
    scripts=["scripts/ddaflow"],
    include_package_data=True,
    zip_safe=False,
    classifiers=classifiers,
    install_requires=[
        'makefun',
        'cloudpickle',
        'dask',
        'distributed',
        'psutil',
        'pydantic>=2',
        'fire',
        'pandas',
    ],
    extras_require={
        'test': [
            'pytest',
            'pytest-cov',
        ],
    },
    python_requires='>=3.8, <4',
)

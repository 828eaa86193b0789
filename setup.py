from setuptools import setup, find_packages
import os

# Read README.md if it exists
long_description = ''
if os.path.exists('README.md'):
    with open('README.md', encoding='utf-8') as f:
        long_description = f.read()

# Read requirements.txt
requirements = []
if os.path.exists('requirements.txt'):
    with open('requirements.txt', encoding='utf-8') as f:
        requirements = [line.strip() for line in f
                       if line.strip() and not line.startswith('#')]

setup(
    name="walkaccess",
    version="0.1.0",
    packages=find_packages(exclude=['tests', 'tests.*']),
    install_requires=requirements,
    extras_require={
        'dev': [
            'pytest>=7.0.0',
            'pytest-cov>=4.0.0',
        ],
        'routing': [
            'r5py>=1.0.0',
        ],
    },
    python_requires=">=3.9",
    description="Walking accessibility surfaces from classified OpenStreetMap POIs on an H3 grid",
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: GIS",
    ],
    keywords="urban-analysis, geospatial, accessibility, walkability, h3, poi, openstreetmap",
    entry_points={
        'console_scripts': [
            'walkaccess=pipeline.__main__:main',
        ],
    },
    include_package_data=True,
    data_files=[
        ('configs', ['configs/walk_accessibility.yaml', 'configs/classification_scheme.csv']),
    ],
    zip_safe=False,
)

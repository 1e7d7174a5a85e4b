"""
Setup script for fused-positioning package.

This package provides a multi-source position fusion engine that combines
GNSS, inertial dead reckoning and BLE/UWB trilateration into one estimate.
"""

from setuptools import setup, find_packages
import os

# Read long description from README
here = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(here, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

# Read requirements
with open(os.path.join(here, 'requirements.txt'), encoding='utf-8') as f:
    requirements = [line.strip() for line in f if line.strip() and not line.startswith('#')]

# Split core and development requirements
core_requirements = []
dev_requirements = []

for req in requirements:
    if any(dev_pkg in req for dev_pkg in ['pytest', 'black', 'flake8', 'mypy']):
        dev_requirements.append(req)
    else:
        core_requirements.append(req)

setup(
    name='fused-positioning',
    version='1.0.0',
    description='Multi-source position fusion: GNSS, inertial and BLE/UWB trilateration',
    long_description=long_description,
    long_description_content_type='text/markdown',
    author='Fused Positioning Team',

    packages=find_packages(where='src'),
    package_dir={'': 'src'},

    install_requires=core_requirements,

    extras_require={
        'dev': dev_requirements,
        'all': dev_requirements,
    },

    python_requires='>=3.8',

    entry_points={
        'console_scripts': [
            'fused-positioning=fused_positioning.main:main',
        ],
    },

    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Topic :: Scientific/Engineering :: GIS',
        'Topic :: Software Development :: Libraries :: Python Modules',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Operating System :: OS Independent',
    ],

    keywords='positioning sensor-fusion gnss imu uwb ble trilateration kalman-filter indoor-positioning',
)

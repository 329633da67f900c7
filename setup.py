#!/usr/bin/env python3

import os
import re
from setuptools import setup

# Utility function to read the README file.
# Used for the long_description.  It's nice, because now 1) we have a top level
# README file and 2) it's easier to type in the README file than to put a raw
# string in below ...


def read(fname):
    return open(os.path.join(os.path.dirname(__file__), fname)).read()


def find_version(source):
    version_file = read(source)
    version_match = re.search(r"^__VERSION__ = ['\"]([^'\"]*)['\"]", version_file, re.M)
    if version_match:
        return version_match.group(1)
    raise RuntimeError("Unable to find version string.")


NAME = 'git-signatures'

setup(
    version=find_version('src/gitsigs/__init__.py'),
    name=NAME,
    description='Attach detached PGP signatures to git refs using git-notes',
    packages=['gitsigs'],
    package_dir={'': 'src'},
    license='MIT-0',
    long_description=read('README.rst'),
    long_description_content_type='text/x-rst',
    keywords=['git', 'signatures', 'notes', 'gnupg', 'approval'],
    install_requires=[
        'python-gnupg>=0.5.0',
    ],
    extras_require={
        'test': ['pytest'],
    },
    python_requires='>=3.8',
    entry_points={
        'console_scripts': [
            'git-signatures=gitsigs:command'
        ],
    },
)

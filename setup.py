"""
Setup script for Dropshare - Encrypted peer-to-peer file sharing.

Created by orpheus497

This library provides:
- Authenticated peer sessions (secp256k1 ECDH + signed challenges)
- AES-256-GCM encrypted, chunked file transfer
- Shared file manifests exchanged between verified peers
- A pluggable message channel with an in-process loopback network
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='dropshare',
    version='1.0.0',
    author='orpheus497',
    description='Encrypted peer-to-peer file sharing with authenticated sessions and chunked transfers',
    long_description=long_description,
    long_description_content_type='text/markdown',
    url='https://github.com/orpheus497/dropshare',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Topic :: Communications :: File Sharing',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.8',
    install_requires=[
        'cryptography>=42.0.4',
        'rich>=13.7.0',
        'tomli>=2.0.1; python_version<"3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.21.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'dropshare=dropshare.__main__:main',
        ],
    },
)

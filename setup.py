"""
Setup script for keyexchange - RSA encrypted messaging over a shared key directory.

This utility provides:
- RSA-4096 key pairs with passphrase-sealed private keys (Argon2id + AES-256-GCM)
- A shared public key directory backed by MongoDB or SQLite
- Messages encrypted under the recipient's public key (RSA-OAEP)
- Argon2id password authentication against the directory
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='keyexchange-cli',
    version='1.0.0',
    description='A command-line utility for RSA encrypted messaging over a shared public key directory',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: End Users/Desktop',
        'Topic :: Communications',
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
        'argon2-cffi>=23.1.0',
        'rich>=13.7.0',
        'pymongo>=4.6.0',
        'python-dotenv>=1.0.0',
        'tomli>=2.0.0; python_version < "3.11"',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'mongomock>=4.1.2',
        ],
    },
    entry_points={
        'console_scripts': [
            'keyexchange=keyexchange.main:main',
        ],
    },
)

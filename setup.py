#!/usr/bin/env python

from setuptools import setup
from vncshare import __version__

README = open('README.rst', 'rt').read()

setup(
    name='vncshare',
    version=__version__,
    description='Twisted based VNC server sharing a screen with VNC viewers',
    install_requires=[
        'Twisted',
        'Pillow>=9.1',
        'zope.interface',
    ],
    extras_require={
        'desktop': [
            'pynput',
        ],
        'test': [
            'pytest',
            'pexpect',
        ],
    },
    python_requires='>=3.8',
    url='',
    download_url='',

    entry_points={
        "console_scripts": [
            'vncshare=vncshare.command:vncshare',
        ],
    },
    packages=['vncshare'],

    classifiers=[
          'Development Status :: 4 - Beta',
          'Environment :: Console',
          'Framework :: Twisted',
          'Intended Audience :: Developers',
          'Intended Audience :: System Administrators',
          'License :: OSI Approved :: MIT License',
          'Operating System :: MacOS :: MacOS X',
          'Operating System :: Microsoft :: Windows',
          'Operating System :: POSIX',
          'Programming Language :: Python',
          'Programming Language :: Python :: 3',
          'Topic :: Desktop Environment',
          'Topic :: System :: Networking',
    ],

    long_description=README,
)

#!/usr/bin/env python3
import sys

from setuptools import setup

from gamesync import __version__ as VERSION

if sys.version_info < (3, 8):
    sys.exit('Python 3.8 is required to run gamesync')

setup(
    name='gamesync',
    version=VERSION,
    license='GPL-3',
    packages=[
        'gamesync',
        'gamesync.savesync',
        'gamesync.services',
        'gamesync.util',
    ],
    scripts=['bin/gamesync'],
    zip_safe=False,
    install_requires=[
        'PyYAML',
        'requests',
    ],
    extras_require={
        'test': ['pytest'],
    },
    description='Cloud save synchronization and download tracking for game launchers',
    long_description="""gamesync keeps the saves of your games in step with the
    cloud of the store they come from (Steam, GOG, Epic Games Store) before a
    game is launched and after it exits, and tracks the progress of game
    downloads.""",
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: End Users/Desktop',
        'License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)',
        'Programming Language :: Python',
        'Operating System :: Linux',
        'Topic :: Games/Entertainment'
    ],
)

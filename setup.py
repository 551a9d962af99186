##############################################################################
#
# Copyright (c) 2010 Zope Foundation and Contributors.
# All Rights Reserved.
#
# This software is subject to the provisions of the Zope Public License,
# Version 2.1 (ZPL).  A copy of the ZPL should accompany this distribution.
# THIS SOFTWARE IS PROVIDED "AS IS" AND ANY AND ALL EXPRESS OR IMPLIED
# WARRANTIES ARE DISCLAIMED, INCLUDING, BUT NOT LIMITED TO, THE IMPLIED
# WARRANTIES OF TITLE, MERCHANTABILITY, AGAINST INFRINGEMENT, AND FITNESS
# FOR A PARTICULAR PURPOSE.
#
##############################################################################
import os

from setuptools import setup


tests_require = [
    'manuel',
    'mock',
    'zc.customdoctests',
    'zope.testing',
    'zope.testrunner',
]


entry_points = """
[console_scripts]
zdserve = zdserve.zdctl:main
"""


def read(*rnames):
    with open(os.path.join(os.path.dirname(__file__), *rnames)) as f:
        return f.read()


setup(
    name="zdserve",
    version='1.0.dev0',
    license="ZPL 2.1",
    description="Serve web applications through a supervised web server",
    author="Zope Foundation and Contributors",
    author_email="zope-dev@zope.dev",
    long_description=(
        read('README.rst') +
        '\n' +
        read('src/zdserve/README.rst') +
        '\n' +
        read('CHANGES.rst')),
    packages=[
        "zdserve",
        "zdserve.tests"],
    package_dir={
        "": "src"},
    package_data={
        "zdserve": ["*.xml", "*.rst"]},
    classifiers=[
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: Zope Public License',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Programming Language :: Python :: Implementation :: CPython',
        'Operating System :: POSIX',
        'Topic :: Internet :: WWW/HTTP :: WSGI :: Server',
        'Topic :: Utilities',
    ],
    zip_safe=False,
    entry_points=entry_points,
    include_package_data=True,
    python_requires='>=3.8',
    install_requires=[
        "psutil",
        "ZConfig",
    ],
    extras_require=dict(test=tests_require),
)

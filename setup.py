import sys
from setuptools import setup

import dohagent


if sys.version_info[:2] < (3, 6):
    raise SystemExit('require Python3.6+')


setup(
    name='dohagent',
    version=dohagent.__version__,
    packages=['dohagent', 'dohagent.pipeline', 'dohagent.tests'],
    install_requires=[
        'twisted>=18.7',
        'treq>=18.6',
        'watchdog>=0.8',
        'zope.interface',
    ],
    extras_require={
        'color': ['coloredlogs'],
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': ['dohagent=dohagent.app:main'],
    },
    python_requires='>=3.6',
    license='MIT',
    author='account-login',
    author_email='',
    description='A DNS-over-HTTPS proxy that adds EDNS client subnet by request path, '
                'powered by twisted.',
    classifiers=[
        'Development Status :: 3 - Alpha',

        'Intended Audience :: Developers',
        'Topic :: Internet :: Name Service (DNS)',
        'Topic :: Internet :: Proxy Servers',
        'Topic :: Internet :: WWW/HTTP :: HTTP Servers',

        'License :: OSI Approved :: MIT License',

        'Operating System :: OS Independent',
        'Framework :: Twisted',

        'Programming Language :: Python :: 3 :: Only',
        'Programming Language :: Python :: 3',
    ],
    keywords='dns doh edns-client-subnet proxy twisted',
    zip_safe=False,
)

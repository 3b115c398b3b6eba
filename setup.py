import sys
from setuptools import setup, find_namespace_packages


if sys.version_info[:2] < (3, 5):
    raise NotImplementedError("Required python version 3.5 or greater")


setup(**{
    'name': 'Monsoon',
    'version': '0.1.dev261019',
    'author': 'Alexey Poryadin',
    'author_email': 'alexey.poryadin@gmail.com',
    'description': "The Monsoon this is set of modules which implements"
                   " the single-threaded run loop multiplexing timers,"
                   " message ports and byte streams.",
    'packages': find_namespace_packages(include=['monsoon', 'monsoon.*']),
    'install_requires': ['tornado'],
    'extras_require': {'test': ['pytest', 'testfixtures']},
    'zip_safe': False
})

"""
The setup file for packaging linewatch
"""
import glob
import os
import pathlib
import shlex
import subprocess
import sys
import tempfile
from setuptools import setup, find_packages, Command

import linewatch

ROOT = os.path.abspath(os.path.dirname(__file__))
if os.path.dirname(__file__) == '':
    ROOT = os.getcwd()
COV_CMD = 'py.test --cov=linewatch --cov=web'


def make_get_input():
    """
    Simple wrapper to get input from user.
    When --yes in sys.argv, skip input and assume yes to any request.
    """
    default = False
    if '--yes' in sys.argv:
        sys.argv.remove('--yes')
        default = True

    def inner_get_input(msg):
        """
        The actual function that emulates input.
        """
        if default:
            return 'yes'

        return input(msg)
    inner_get_input.default = default

    return inner_get_input


get_input = make_get_input()


def check_pytest_cov():
    """
    Exit unless pytest and its coverage plugin are installed.
    """
    with tempfile.NamedTemporaryFile() as tfile:
        with open(os.devnull, 'w', encoding='utf-8') as dnull, open(tfile.name, 'w', encoding='utf-8') as fout:
            subprocess.Popen(shlex.split('py.test --version'), stdout=dnull, stderr=fout).wait()
        with open(tfile.name, 'r', encoding='utf-8') as fin:
            out = fin.read()

    if 'pytest-cov' not in out:
        print('Please run: python setup.py deps')
        sys.exit(1)


class Clean(Command):
    """
    Equivalent of make clean.
    """
    user_options = []

    def initialize_options(self):
        pass

    def finalize_options(self):
        pass

    def run(self):
        root = pathlib.Path(ROOT)

        # Ignore .pyc files in .tox as whole dir will be removed.
        rm_list = [file for file in root.glob('**/*.pyc')
                   if root / '.tox' not in file.parents]
        rm_list += list(root.glob('*.egg-info'))
        rm_list += list(root.glob('*.egg'))
        rm_list += list(root.rglob('*diagram.png'))
        rm_list.append(root / '.eggs')
        rm_list.append(root / '.pytest_cache')
        rm_list.append(root / 'build')
        rm_list.append(root / 'dist')

        print("Removing:")
        for path in rm_list:
            print("\t{}".format(path))
        recv = get_input('OK? y/n  ').strip().lower()
        if recv.startswith('y'):
            subprocess.run(['rm', '-vrf'] + [str(f) for f in rm_list], check=False)


class InstallDeps(Command):
    """
    Install dependencies to run & test.
    """
    user_options = []

    def initialize_options(self):
        pass

    def finalize_options(self):
        pass

    def run(self):
        print('Installing/Upgrading runtime & testing dependencies')
        cmd = 'pip install -U ' + ' '.join(shlex.quote(dep) for dep in RUN_DEPS + TEST_DEPS)
        print('Executing: ' + cmd)
        recv = get_input('OK? y/n  ').strip().lower()
        if recv.startswith('y'):
            out = subprocess.DEVNULL if get_input.default else None
            timeout = 300
            try:
                subprocess.Popen(shlex.split(cmd), stdout=out).wait(timeout)
            except subprocess.TimeoutExpired:
                print('Deps installation took over {} seconds, something is wrong.'.format(timeout))


class Test(Command):
    """
    Run the tests and track coverage.
    """
    user_options = []

    def initialize_options(self):
        pass

    def finalize_options(self):
        pass

    def run(self):
        check_pytest_cov()
        old_cwd = os.getcwd()

        try:
            os.chdir(ROOT)
            subprocess.call(shlex.split(COV_CMD))
        finally:
            os.chdir(old_cwd)


class Coverage(Command):
    """
    Run the tests, generate the coverage html report and open it in your browser.
    """
    user_options = []

    def initialize_options(self):
        pass

    def finalize_options(self):
        pass

    def run(self):
        check_pytest_cov()
        old_cwd = os.getcwd()
        cov_dir = os.path.join(tempfile.gettempdir(), 'linewatchCoverage')
        cmds = [
            COV_CMD,
            'coverage html -d ' + cov_dir,
            'xdg-open ' + os.path.join(cov_dir, 'index.html'),
        ]

        try:
            os.chdir(ROOT)
            for cmd in cmds:
                subprocess.call(shlex.split(cmd))
        finally:
            os.chdir(old_cwd)


class UMLDocs(Command):
    """
    Generate UML class and module diagrams of the pipeline.
    """
    user_options = []

    def initialize_options(self):
        pass

    def finalize_options(self):
        pass

    def run(self):
        old_cwd = os.getcwd()
        diagrams = []
        cmds = [
            'pyreverse linewatch',
            'dot -Tpng classes.dot -o ./extras/linewatch_class_diagram.png',
            'pyreverse linewatch web',
            'dot -Tpng packages.dot -o ./extras/overall_module_diagram.png',
        ]

        try:
            os.chdir(ROOT)
            os.makedirs('extras', exist_ok=True)
            for cmd in cmds:
                subprocess.call(shlex.split(cmd))
            diagrams = [os.path.abspath(pic) for pic in glob.glob('extras/*diagram.png')]
        except OSError:
            print('Diagrams need pylint (pyreverse) and graphviz (dot) installed.')
        finally:
            for fname in glob.glob('*.dot'):
                os.remove(fname)
            os.chdir(old_cwd)

        print('\nDiagrams generated:')
        print('  ' + '\n  '.join(diagrams))


SHORT_DESC = 'Change detection and live display feed of the production line sheets'
MY_NAME = 'Line Watch maintainers'
MY_EMAIL = 'N/A'
RUN_DEPS = ['aiofiles', 'aiozmq', 'APScheduler<4', 'google-auth', 'gspread', 'gspread_asyncio',
            'msgpack', 'pytz', 'pyyaml', 'pyzmq', 'requests', 'Sanic', 'uvloop']
TEST_DEPS = ['coverage', 'flake8', 'mock', 'pylint', 'pytest', 'pytest-asyncio', 'pytest-cov']
setup(
    name='linewatch',
    version=linewatch.__version__,
    description=SHORT_DESC,
    long_description=SHORT_DESC,
    author=MY_NAME,
    author_email=MY_EMAIL,
    maintainer=MY_NAME,
    maintainer_email=MY_EMAIL,
    license='BSD',
    platforms=['any'],

    # See https://pypi.python.org/pypi?%3Aaction=list_classifiers
    classifiers=[
        'Development Status :: 4 - Beta',
        'Environment :: Console',
        'Framework :: AsyncIO',
        'Framework :: Pytest',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: BSD License',
        'Natural Language :: English',
        'Operating System :: POSIX :: Linux',
        'Programming Language :: Python',
        'Programming Language :: Python :: 3',
    ],

    keywords='development',
    python_requires='>=3.8',
    packages=find_packages(exclude=['venv', '.tox', 'tests', 'tests.*']),
    include_package_data=True,

    # List run-time dependencies here.  These will be installed by pip when
    # your project is installed.
    install_requires=RUN_DEPS,

    extras_require={
        'test': TEST_DEPS,
    },

    entry_points={
        'console_scripts': [
            'linewatch = linewatch.main:main',
            'linewatch-trigger = web.pub:main',
        ],
    },

    cmdclass={
        'clean': Clean,
        'coverage': Coverage,
        'deps': InstallDeps,
        'test': Test,
        'uml': UMLDocs,
    }
)

#!/usr/bin/env python3
"""
Production build check for the 공무원맛집 web application.

Byte-compiles every module and imports the application with warnings
recorded. One known harmless warning raised inside the Supabase realtime
client is dropped. Errors always fail the build; remaining warnings fail it
only when CI is set (and not "false").
"""

import compileall
import importlib
import os
import re
import sys
import warnings

PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
APP_MODULE = 'app'

REALTIME_WARNING = re.compile(r'websockets\.legacy is deprecated|Critical dependency')
REALTIME_MODULE = re.compile(r'[\\/]realtime[\\/]|[\\/]websockets[\\/]legacy')


def is_ignorable_warning(warning):
    message = str(warning.message)
    module = warning.filename or ''
    return bool(REALTIME_WARNING.search(message)) and bool(REALTIME_MODULE.search(module))


def is_ci(environ=None):
    value = (environ if environ is not None else os.environ).get('CI')
    return bool(value) and value.lower() != 'false'


def format_warning(warning):
    return f'{warning.filename}:{warning.lineno}: {warning.category.__name__}: {warning.message}'


def compile_sources(root=PROJECT_ROOT):
    return compileall.compile_dir(root, quiet=1, rx=re.compile(r'[\\/](\.[^\\/]+|tests|build|dist)[\\/]'))


def import_application(module_name=APP_MODULE):
    """Import the app module and return the warnings it raised."""
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter('always')
        sys.modules.pop(module_name, None)
        importlib.import_module(module_name)
    return [w for w in caught if not is_ignorable_warning(w)]


def main(environ=None):
    if PROJECT_ROOT not in sys.path:
        sys.path.insert(0, PROJECT_ROOT)

    if not compile_sources():
        print('Failed to compile.')
        return 1

    try:
        remaining = import_application()
    except Exception as e:
        print(f'Failed to compile.\n\n{e}')
        return 1

    messages = [format_warning(w) for w in remaining]

    if is_ci(environ) and messages:
        print('\nTreating warnings as errors because CI = true.\n')
        print('\n\n'.join(messages))
        return 1

    if messages:
        print('Compiled with warnings.\n')
        print('\n\n'.join(messages))
    else:
        print('Compiled successfully.')
    return 0


if __name__ == '__main__':
    sys.exit(main())

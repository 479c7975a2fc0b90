# services/__init__.py

# This file makes the 'services' directory a Python package and
# exposes its lightweight modules for import.

from . import errors
from . import sync_tracker

import sys
import os

# Add project root to sys.path so tests can import top-level modules like 'storage', 'scoring', 'normalize', etc.
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

# shared fakes live next to the tests
TESTS_DIR = os.path.abspath(os.path.dirname(__file__))
if TESTS_DIR not in sys.path:
    sys.path.insert(0, TESTS_DIR)

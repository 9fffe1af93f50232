"""
Test support utilities for spine-orm tests.

Record types shared across test modules live in ``models``; the recording
executor used to assert which statements reached the store lives in
``recording``.
"""

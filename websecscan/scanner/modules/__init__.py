"""
WebSecScan Test Runners

Each module exposes a BaseModule subclass and a create() factory.
"""

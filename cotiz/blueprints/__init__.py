"""
cotiz/blueprints

One package per API area; each exposes its Blueprint object from __init__.py.
"""

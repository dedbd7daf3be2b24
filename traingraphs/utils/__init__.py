"""Package containing various tools (logging, nested dicts ...)
"""

"""
Arena Trader - competing LLM agents trading perpetual futures under shared risk limits.
"""
__version__ = "1.0.0"

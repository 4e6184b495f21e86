"""
Command-line interface for ChatCompare.
"""

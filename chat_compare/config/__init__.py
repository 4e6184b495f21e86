"""
Configuration for ChatCompare.

Provider catalogs come from YAML; runtime settings and secrets come from
the environment.
"""

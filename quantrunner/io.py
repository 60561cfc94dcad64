"""
Input/Output operations for quantrunner.

This module provides utility functions for loading framework objects, such as
the settings, from disk.
"""

import yaml
from quantrunner.config import Settings


def load_config(path: str) -> Settings:
    """
    Loads a YAML configuration file and parses it into a strongly-typed
    Settings object.

    Args:
        path (str): The path to the YAML configuration file.

    Returns:
        Settings: A Pydantic Settings object with the validated configuration.
    """
    with open(path, 'r') as f:
        raw_config = yaml.safe_load(f)
    return Settings(**(raw_config or {}))

"""Small shared helpers for the backdrop package."""

from backdrop.utils.env_config import (
    get_env_bool,
    get_env_float,
    get_env_int,
    get_env_str,
)

__all__ = [
    "get_env_bool",
    "get_env_float",
    "get_env_int",
    "get_env_str",
]

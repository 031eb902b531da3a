"""Where swapped dependencies come from.

Key classes and functions:
    parse_refspec           - ``org/repo[#branch|@tag]`` parsing and validation
    parse_dependency_value  - ``--<dependency>`` flag values (path or GitHub shorthand)
    CacheManager            - On-disk cache of GitHub clones
"""

from .cache import CacheManager
from .refspec import (
    parse_dependency_value,
    parse_refspec,
    validate_ref,
    validate_repository,
)

__all__ = [
    "CacheManager",
    "parse_dependency_value",
    "parse_refspec",
    "validate_ref",
    "validate_repository",
]

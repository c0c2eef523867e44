"""Shared constant values for the metacode runtime."""

METACODE_VERSION = "0.3"

# Call names recognised as unquote markers inside quoted code.
UNQUOTE_NAMES = frozenset({"uq"})

# Name used for the meta-mode invoker inside unquote evaluation namespaces.
META_INVOKER_NAME = "__metacode_call__"

# Binding name used when neither a preferred name nor an identity yields one.
DEFAULT_BINDING = "value"

# First numeric suffix used when a binding name is already taken (df, df_2, ...).
NAME_SUFFIX_START = 2

# Memoized values kept per capture before the least recently used is evicted.
MEMO_SIZE = 128

LOG_LEVEL_ENV = "METACODE_LOG_LEVEL"
DEFAULT_LOG_LEVEL = "WARNING"

LOGBOOK_FILE = "metacode.logbook.jsonl"
KEY_FILE = "metacode_private_key.pem"
PUB_FILE = "metacode_public_key.pem"

DEPENDENCY_COLORS = {
    "root": "#8BC34A",
    "shared": "#FFEB3B",
    "upstream": "#90CAF9",
    "observer": "#B0BEC5",
}

__all__ = [
    "METACODE_VERSION",
    "UNQUOTE_NAMES",
    "META_INVOKER_NAME",
    "DEFAULT_BINDING",
    "NAME_SUFFIX_START",
    "MEMO_SIZE",
    "LOG_LEVEL_ENV",
    "DEFAULT_LOG_LEVEL",
    "LOGBOOK_FILE",
    "KEY_FILE",
    "PUB_FILE",
    "DEPENDENCY_COLORS",
]

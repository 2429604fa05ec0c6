"""Durable tier for the image engine: sqlite operator and byte store."""

from .byte_store import DiskByteStore
from .db_operator import DbOperator

__all__ = [
    "DbOperator",
    "DiskByteStore",
]

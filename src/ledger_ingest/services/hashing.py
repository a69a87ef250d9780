"""Content fingerprints for whole files and normalized rows."""

import gzip
import hashlib
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

GZIP_MAGIC = b"\x1f\x8b"


def decompress_if_needed(content: bytes) -> bytes:
    """Gunzip content that carries the gzip magic header, else return it unchanged."""
    if content[:2] == GZIP_MAGIC:
        return gzip.decompress(content)
    return content


def compute_file_hash(content: bytes) -> str:
    """SHA256 of the original (uncompressed) upload, 64 hex characters."""
    return hashlib.sha256(decompress_if_needed(content)).hexdigest()


def normalize_amount(amount: Decimal) -> str:
    return str(Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def normalize_description(description: str | None) -> str:
    return " ".join((description or "").split()).lower()


def compute_row_hash(txn_date: date, amount: Decimal, description: str | None) -> str:
    """Calculate the duplicate-detection hash for one transaction row.

    Hash = SHA256(date|amount|description), with the amount signed and
    quantized to cents and the description whitespace-collapsed and lowercased,
    so the same bank line hashes identically regardless of source file format.
    """
    components = [
        txn_date.isoformat(),
        normalize_amount(amount),
        normalize_description(description),
    ]
    hash_input = "|".join(components).encode("utf-8")
    return hashlib.sha256(hash_input).hexdigest()

"""
CSV input and output for user lists.
"""

import csv
import logging
from typing import Iterable, List, TextIO

from sso_membership.models import Identity

logger = logging.getLogger(__name__)

USER_CSV_HEADER = ['username', 'email', 'name', 'active']


def read_identifiers(file_path: str) -> List[str]:
    """
    Read user identifiers from the first column of a CSV file.

    Args:
        file_path: Path to the CSV file

    Returns:
        Non-empty first-column values, whitespace stripped, in file order

    Raises:
        OSError: If the file cannot be opened
        csv.Error: If the file is not valid CSV
    """
    identifiers = []
    with open(file_path, 'r', newline='', encoding='utf-8') as f:
        for row in csv.reader(f):
            if not row:
                continue
            value = row[0].strip()
            if value:
                identifiers.append(value)

    logger.debug(f"Read {len(identifiers)} identifiers from {file_path}")
    return identifiers


def _cell(value) -> str:
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'true' if value else 'false'
    return str(value)


def write_identities(stream: TextIO, identities: Iterable[Identity]) -> int:
    """
    Write identities as a fully quoted CSV with a header row.

    Args:
        stream: Writable text stream
        identities: Identities to write

    Returns:
        Number of data rows written
    """
    writer = csv.writer(stream, quoting=csv.QUOTE_ALL, lineterminator='\n')
    writer.writerow(USER_CSV_HEADER)

    count = 0
    for identity in identities:
        writer.writerow([
            _cell(identity.username),
            _cell(identity.email),
            _cell(identity.display_name),
            _cell(identity.active)
        ])
        count += 1
    return count

"""
Table (re)creation for load runs
"""

import logging
import struct
from typing import Iterable, List, Optional, Sequence, Union

from minicluster.client import Admin
from minicluster.descriptors import TableDescriptor

logger = logging.getLogger(__name__)


def two_byte_split_points(values: Iterable[int]) -> List[bytes]:
    """Encode each value as a big-endian unsigned short row key"""
    return [struct.pack(">H", value) for value in values]


class SchemaManager:
    """Ensures a freshly created table exists"""

    def __init__(self, admin: Admin):
        self.admin = admin

    def drop_table(self, name: str) -> bool:
        """Disable (when enabled) and delete a table; False if it did not exist"""
        if name not in self.admin.list_table_names():
            return False
        if self.admin.is_table_enabled(name):
            logger.info(f"Disabling table {name}")
            self.admin.disable_table(name)
        logger.info(f"Deleting table {name}")
        self.admin.delete_table(name)
        return True

    def ensure_table(self, name: str, column_families: Sequence[Union[bytes, str]],
                     split_points: Optional[Sequence[bytes]] = None) -> TableDescriptor:
        """
        Recreate ``name`` with the given families, pre-split at split_points.

        Administrative errors propagate unchanged; there is no retry.
        """
        self.drop_table(name)

        descriptor = TableDescriptor.of(name, column_families)
        regions = self.admin.create_table(descriptor, list(split_points or []))
        logger.info(f"Created table {name} with families {descriptor.family_names} "
                    f"and {len(regions)} regions")
        return descriptor

"""
Table and column family descriptors
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Union

from .errors import InvalidTableNameError
from .operations import to_bytes

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.\-]+$")


def validate_table_name(name: str) -> str:
    if not isinstance(name, str) or not NAME_PATTERN.match(name) or name.startswith("."):
        raise InvalidTableNameError(str(name), f"Invalid table name: {name!r}")
    return name


@dataclass
class ColumnFamilyDescriptor:
    """Column family settings"""
    name: bytes
    max_versions: int = 1

    def __post_init__(self):
        self.name = to_bytes(self.name)
        if not NAME_PATTERN.match(self.name.decode("utf-8", errors="replace")):
            raise ValueError(f"Invalid column family name: {self.name!r}")
        if self.max_versions < 1:
            raise ValueError("max_versions must be at least 1")

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name.decode("utf-8"), "max_versions": self.max_versions}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ColumnFamilyDescriptor':
        return cls(name=data["name"], max_versions=data.get("max_versions", 1))


@dataclass
class TableDescriptor:
    """Table name plus its column families"""
    name: str
    families: Dict[bytes, ColumnFamilyDescriptor] = field(default_factory=dict)

    def __post_init__(self):
        validate_table_name(self.name)

    @classmethod
    def of(cls, name: str, families: Iterable[Union[bytes, str, ColumnFamilyDescriptor]]) -> 'TableDescriptor':
        descriptor = cls(name)
        for family in families:
            descriptor.add_family(family)
        return descriptor

    def add_family(self, family: Union[bytes, str, ColumnFamilyDescriptor]) -> 'TableDescriptor':
        if not isinstance(family, ColumnFamilyDescriptor):
            family = ColumnFamilyDescriptor(family)
        if family.name in self.families:
            raise ValueError(f"Column family {family.name!r} already defined for {self.name}")
        self.families[family.name] = family
        return self

    def has_family(self, family: bytes) -> bool:
        return family in self.families

    @property
    def family_names(self) -> List[bytes]:
        return sorted(self.families)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "families": [self.families[f].to_dict() for f in self.family_names],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TableDescriptor':
        return cls.of(data["name"], [ColumnFamilyDescriptor.from_dict(f) for f in data.get("families", [])])

"""
Tag handling: AWS tag list conversion, eligibility filtering and the
schema list encoded in an instance tag.
"""
from typing import Any, Iterable, List

from .constants import SCHEMA_LIST_SEPARATOR
from .errors import SchemaListError
from .models import Instance, Tag


def tags_to_list(tags: Any) -> List[Tag]:
    """
    Convert an AWS tag list to Tag records, keeping order.

    Supports:
    - AWS format: [{"Key": "Name", "Value": "my-db"}]
    - Plain dict: {"Name": "my-db"}
    """
    if not tags:
        return []

    if isinstance(tags, dict):
        return [Tag(str(k), str(v)) for k, v in tags.items()]

    if isinstance(tags, list):
        return [
            Tag(t.get("Key", ""), t.get("Value", ""))
            for t in tags
            if t.get("Key")
        ]

    return []


def filter_on_tag(instances: Iterable[Instance], key: str, value: str) -> List[Instance]:
    """
    Return the instances tagged with exactly ``key`` = ``value``.

    Matching is case-sensitive with no prefix or partial matching. Instances
    without the key are excluded.
    """
    return [i for i in instances if i.has_tag(key, value)]


def parse_schema_list(instance: Instance, tag_key: str) -> List[str]:
    """
    Read the colon-separated schema list from an instance tag.

    Example: "db1:db2:db3" -> ["db1", "db2", "db3"]

    Raises:
        SchemaListError: if the tag is missing or names no schema
    """
    raw = instance.tag_value(tag_key)
    if raw is None:
        raise SchemaListError(f"Instance {instance.name} has no '{tag_key}' tag")

    schemas = [s.strip() for s in raw.split(SCHEMA_LIST_SEPARATOR) if s.strip()]
    if not schemas:
        raise SchemaListError(f"Instance {instance.name} has an empty '{tag_key}' tag")
    return schemas

"""Deterministic stack names.

Names depend only on the stack kind and its identifying fields so that
re-running a bootstrap addresses the same stacks.
"""

import hashlib

CF_STACK_MAX_LENGTH = 128


def short_hash(value: str, length: int = 6) -> str:
    return hashlib.sha1(value.encode("utf-8")).hexdigest()[:length]


def truncate_name(name: str, max_length: int, hash_length: int = 6) -> str:
    """Shorten a name to ``max_length``, keeping it unique with a hash suffix."""
    if len(name) <= max_length:
        return name
    keep = max_length - hash_length - 1
    return f"{name[:keep]}-{short_hash(name, hash_length)}"


def org_stack_name(prefix: str, org_slug: str) -> str:
    return truncate_name(f"{prefix}-{org_slug}-Org", CF_STACK_MAX_LENGTH)


def pipeline_stack_name(prefix: str, pipeline_slug: str) -> str:
    return truncate_name(f"{prefix}-{pipeline_slug}-Pipeline", CF_STACK_MAX_LENGTH)


def account_stack_name(prefix: str) -> str:
    return f"{prefix}-Account-Bootstrap"


def stage_stack_name(prefix: str, pipeline_slug: str, stage_name: str) -> str:
    return truncate_name(f"{prefix}-{pipeline_slug}-{stage_name}-Stage", CF_STACK_MAX_LENGTH)


def import_stack_name(prefix: str, pipeline_slug: str) -> str:
    return truncate_name(f"{prefix}-{pipeline_slug}-Import", CF_STACK_MAX_LENGTH)

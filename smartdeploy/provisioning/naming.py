"""Deterministic resource naming.

Names derive only from the repository/service name and the resource
kind, so every redeploy finds the resources created by the first one.
"""

import re

MAX_SUBDOMAIN_LENGTH = 63
MAX_TARGET_GROUP_LENGTH = 32


def slugify(value: str, max_length: int = MAX_SUBDOMAIN_LENGTH, fallback: str = "app") -> str:
    """Lowercase, keep [a-z0-9-], collapse dashes, trim to length."""
    slug = re.sub(r"[^a-z0-9-]+", "-", (value or "").lower())
    slug = re.sub(r"-{2,}", "-", slug).strip("-")
    slug = slug[:max_length].rstrip("-")
    return slug or fallback


def resource_name(base: str, kind: str, max_length: int = 63) -> str:
    """``<base>-<kind>``, trimming the base so the kind suffix survives."""
    suffix = f"-{slugify(kind)}"
    head = slugify(base, max_length=max(1, max_length - len(suffix)))
    return f"{head}{suffix}"


def target_group_name(base: str) -> str:
    return resource_name(base, "tg", max_length=MAX_TARGET_GROUP_LENGTH)


def shared_alb_name(account_id: str) -> str:
    return f"smartdeploy-{account_id[-6:]}-alb"


def hostname_for(service_name: str, domain: str) -> str:
    return f"{slugify(service_name)}.{domain.strip('.').lower()}"


def env_var_name(service_name: str) -> str:
    """Environment variable carrying a sibling service URL."""
    return re.sub(r"[^A-Z0-9]+", "_", service_name.upper()).strip("_") + "_URL"


def db_identifier(base: str) -> str:
    """RDS identifiers must start with a letter."""
    name = resource_name(base, "db")
    return name if name[0].isalpha() else f"d{name}"[:63]

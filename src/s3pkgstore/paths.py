"""Object key layout for packages stored under a key prefix."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from fnmatch import fnmatchcase

from s3pkgstore.config import PackageAccessRule, add_trailing_slash

CATALOG_FILE_NAME = "catalog.json"
PACKAGE_FILE_NAME = "package.json"

AccessResolver = Callable[[str], PackageAccessRule | None]


class PackageAccessRules:
    """Match package names against configured glob rules, first match wins."""

    def __init__(self, rules: Iterable[PackageAccessRule] = ()) -> None:
        self.rules = list(rules)

    def __call__(self, package_name: str) -> PackageAccessRule | None:
        for rule in self.rules:
            if fnmatchcase(package_name, rule.pattern):
                return rule
        return None


def no_access_rules(package_name: str) -> PackageAccessRule | None:
    _ = package_name
    return None


def join_key(base: str, *segments: str) -> str:
    """Append segments to ``base`` with exactly one ``/`` at each join."""
    key = base
    for segment in segments:
        key = f"{add_trailing_slash(key)}{segment.lstrip('/')}"
    return key


def resolve_package_path(
    key_prefix: str,
    package_name: str,
    *segments: str,
    access: AccessResolver | None = None,
) -> str:
    rule = access(package_name) if access is not None else None
    if rule is not None and rule.storage:
        base = f"{key_prefix}{add_trailing_slash(rule.storage)}{package_name}"
    else:
        base = f"{key_prefix}{package_name}"
    return join_key(base, *segments)


def catalog_key(key_prefix: str) -> str:
    return f"{key_prefix}{CATALOG_FILE_NAME}"


def safe_package_name(package_name: str) -> str:
    return re.sub(r"^-", "", re.sub(r"[@/]", "-", package_name))


def tarball_file_name(package_name: str, version: str) -> str:
    name_without_scope = package_name.split("/", 1)[1] if "/" in package_name else package_name
    return f"{name_without_scope}-{version}.tgz"

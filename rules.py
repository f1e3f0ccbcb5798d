import logging
import re
from dataclasses import dataclass, fields
from enum import Enum
from typing import Any, Iterable, Mapping, NamedTuple

from utils import (
    CURRENT_SCHEMA_VERSION,
    InvalidConfigError,
    validate_glob_pattern,
    validate_regex_pattern,
)


class MatchType(Enum):
    """How a rule's ``pattern`` is interpreted."""

    EXTENSION = "extension"
    GLOB = "glob"
    REGEX = "regex"
    FILETYPE_ID = "filetype_id"
    PATH_CONTAINS = "path_contains"


class OverlapPolicy(Enum):
    """How include and exclude matches combine into a verdict."""

    EXCLUDE_OVERRIDES = "exclude_overrides"
    INCLUDE_OVERRIDES = "include_overrides"


def _parse_enum(enum_cls, value, *, context):
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        key = value.strip()
        for member in enum_cls:
            if key.lower() in (member.value, member.name.lower()):
                return member
    choices = ", ".join(member.value for member in enum_cls)
    raise InvalidConfigError(
        f"Invalid value for {context}: {value!r}. Expected one of: {choices}."
    )


def parse_overlap_policy(value, *, context="filters.overlap_policy"):
    if value is None:
        return OverlapPolicy.EXCLUDE_OVERRIDES
    return _parse_enum(OverlapPolicy, value, context=context)


@dataclass(frozen=True)
class FilterRule:
    """A single filtering rule.

    Rules are evaluated against a normalized, forward-slash separated path
    relative to the repository root.
    """

    enabled: bool = True
    type: MatchType = MatchType.EXTENSION
    pattern: str = ""
    case_sensitive: bool = False
    # Lets the rule gate directories during traversal.
    apply_to_directories: bool = False

    def to_dict(self) -> dict:
        return {
            'enabled': self.enabled,
            'type': self.type.value,
            'pattern': self.pattern,
            'case_sensitive': self.case_sensitive,
            'apply_to_directories': self.apply_to_directories,
        }


_RULE_KEYS = {f.name for f in fields(FilterRule)}


def parse_rule(entry: Any, *, context="rule") -> FilterRule:
    """Return a :class:`FilterRule` from a config mapping.

    ``FilterRule`` instances are returned unchanged. Unknown keys are logged
    and ignored; wrong types raise :class:`InvalidConfigError`.
    """

    if isinstance(entry, FilterRule):
        return entry
    if not isinstance(entry, Mapping):
        raise InvalidConfigError(
            f"{context} must be a mapping with 'type' and 'pattern' keys, "
            f"but got: {type(entry).__name__}"
        )

    unknown = set(entry) - _RULE_KEYS
    if unknown:
        logging.warning(
            "Unknown keys in %s will be ignored: %s",
            context,
            ", ".join(sorted(map(str, unknown))),
        )

    if 'pattern' not in entry:
        raise InvalidConfigError(f"{context} is missing the 'pattern' key")
    pattern = entry['pattern']
    if not isinstance(pattern, str):
        raise InvalidConfigError(
            f"'{context}.pattern' must be a string, but got: {type(pattern).__name__}"
        )

    match_type = _parse_enum(
        MatchType, entry.get('type', MatchType.EXTENSION.value), context=f"{context}.type"
    )

    flags = {}
    for key, default in (
        ('enabled', True),
        ('case_sensitive', False),
        ('apply_to_directories', False),
    ):
        value = entry.get(key, default)
        if value is None:
            value = default
        if not isinstance(value, bool):
            raise InvalidConfigError(f"'{context}.{key}' must be a boolean value")
        flags[key] = value

    return FilterRule(type=match_type, pattern=pattern, **flags)


def parse_rules(entries: Iterable[Any] | None, *, context="rules") -> list[FilterRule]:
    if entries is None:
        return []
    if not isinstance(entries, (list, tuple)):
        raise InvalidConfigError(f"'{context}' must be a list of rules")
    return [
        parse_rule(entry, context=f"{context}[{i}]") for i, entry in enumerate(entries)
    ]


# Compiled pattern variants. ``NO_PATTERN`` means the rule is resolved by its
# type at match time because it needs per-file metadata.

class RegexPattern(NamedTuple):
    pattern: re.Pattern


class GlobPattern(NamedTuple):
    pattern: re.Pattern


class PathContains(NamedTuple):
    needle: str
    case_sensitive: bool


NO_PATTERN = None

CompiledPattern = RegexPattern | GlobPattern | PathContains | None


class CompiledRule(NamedTuple):
    source: FilterRule
    compiled: CompiledPattern


_GLOB_ESCAPED = frozenset('.()+|^$@%{}[]\\')


def glob_to_regex(glob: str) -> str:
    """Translate ``glob`` into an anchored regular expression string.

    ``**/`` matches zero or more leading directories, a bare ``**`` matches
    anything including ``/``, ``*`` stays within one path segment and ``?``
    matches exactly one character. Backslashes are treated as ``/``.
    """

    normalized = glob.replace('\\', '/')
    parts = ['^']
    index = 0
    length = len(normalized)
    while index < length:
        ch = normalized[index]
        if ch == '*':
            if index + 1 < length and normalized[index + 1] == '*':
                if index + 2 < length and normalized[index + 2] == '/':
                    parts.append('(?:.*/)?')
                    index += 3
                else:
                    parts.append('.*')
                    index += 2
                continue
            parts.append('[^/]*')
        elif ch == '?':
            parts.append('.')
        elif ch in _GLOB_ESCAPED:
            parts.append('\\' + ch)
        else:
            parts.append(ch)
        index += 1
    parts.append('$')
    return ''.join(parts)


def compile_rule(rule: FilterRule, *, context="rule") -> CompiledPattern:
    """Compile ``rule`` into its matcher.

    Raises :class:`InvalidPatternError` when a regex rule does not compile.
    """

    flags = 0 if rule.case_sensitive else re.IGNORECASE

    if rule.type is MatchType.REGEX:
        return RegexPattern(
            validate_regex_pattern(rule.pattern, context=context, flags=flags)
        )

    if rule.type is MatchType.GLOB:
        glob = validate_glob_pattern(rule.pattern, context=context)
        return GlobPattern(re.compile(glob_to_regex(glob), flags))

    if rule.type is MatchType.PATH_CONTAINS:
        needle = rule.pattern if rule.case_sensitive else rule.pattern.lower()
        return PathContains(needle, rule.case_sensitive)

    return NO_PATTERN


def compile_rules(rules: Iterable[Any], *, context="rules") -> list[CompiledRule]:
    """Compile the enabled rules of ``rules`` in order."""

    compiled = []
    for i, entry in enumerate(rules or ()):
        rule = parse_rule(entry, context=f"{context}[{i}]")
        if not rule.enabled:
            continue
        compiled.append(
            CompiledRule(rule, compile_rule(rule, context=f"{context}[{i}]"))
        )
    return compiled


def legacy_extension_rules(filename_filters) -> list[FilterRule]:
    """Convert legacy extension strings (``".kt"``, ``"js"``) to include rules."""

    migrated = []
    for legacy in filename_filters or ():
        if not isinstance(legacy, str):
            raise InvalidConfigError(
                "'filters.filename_filters' must be a list of extension strings"
            )
        trimmed = legacy.strip()
        if not trimmed:
            continue
        migrated.append(
            FilterRule(
                enabled=True,
                type=MatchType.EXTENSION,
                pattern=trimmed.removeprefix('.'),
                case_sensitive=False,
                apply_to_directories=False,
            )
        )
    return migrated


def migrate_legacy_filters(config):
    """Upgrade configuration written before rule-based filtering.

    Old configurations kept a flat ``filters.filename_filters`` list of
    extensions. When no ``include_rules`` exist they become ``EXTENSION``
    include rules. A missing ``schema_version`` counts as version 1.
    """

    version = config.get('schema_version') or 1
    if not isinstance(version, int) or isinstance(version, bool):
        raise InvalidConfigError("'schema_version' must be an integer")
    if version >= CURRENT_SCHEMA_VERSION:
        return config

    filters = config.get('filters')
    if isinstance(filters, dict):
        legacy = filters.get('filename_filters') or []
        if not filters.get('include_rules') and legacy:
            filters['include_rules'] = legacy_extension_rules(legacy)
            logging.info(
                "Migrated %d legacy filename filter(s) to include rules.",
                len(filters['include_rules']),
            )

    config['schema_version'] = CURRENT_SCHEMA_VERSION
    return config


def validate_filters_section(config):
    """Parse rules and the overlap policy of the 'filters' section in place.

    Every enabled rule is compiled once so that a broken pattern is reported
    when the configuration is loaded rather than during a run.
    """

    filters = config.get('filters')
    if not isinstance(filters, dict):
        return

    filters['overlap_policy'] = parse_overlap_policy(filters.get('overlap_policy'))

    for key in ('include_rules', 'exclude_rules'):
        context = f"filters.{key}"
        filters[key] = parse_rules(filters.get(key), context=context)
        compile_rules(filters[key], context=context)

    if 'filename_filters' in filters:
        logging.debug(
            "'filters.filename_filters' is deprecated; use 'filters.include_rules' instead."
        )

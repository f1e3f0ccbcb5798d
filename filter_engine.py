"""Rule evaluation shared by copy runs and the filter preview.

A :class:`FilterEngine` compiles its rules once and memoizes per-file
verdicts. Build a new engine for every run so configuration changes are
picked up.
"""

import logging
import os
import stat
from pathlib import Path

from filetypes import classify_file_type
from rules import (
    CompiledRule,
    GlobPattern,
    MatchType,
    OverlapPolicy,
    PathContains,
    RegexPattern,
    compile_rules,
    parse_overlap_policy,
)


REASON_HIDDEN = "hidden"
REASON_NOT_INCLUDED = "no include rule matched"
REASON_EXCLUDED = "matched exclude rule"


def is_hidden(path) -> bool:
    """Return ``True`` for dotfiles and files the OS marks as hidden."""
    # ".." and "." have no name of their own until made absolute.
    path = Path(os.path.abspath(path))
    if path.name.startswith('.'):
        return True
    try:
        st = os.stat(path, follow_symlinks=False)
    except (OSError, ValueError):
        return False
    # Windows keeps a hidden attribute, BSD and macOS a UF_HIDDEN flag.
    attributes = getattr(st, 'st_file_attributes', 0)
    if attributes & getattr(stat, 'FILE_ATTRIBUTE_HIDDEN', 0):
        return True
    return bool(getattr(st, 'st_flags', 0) & getattr(stat, 'UF_HIDDEN', 0))


def file_extension(name: str) -> str:
    """Return the text after the last dot of ``name`` (``''`` without one)."""
    _, dot, extension = name.rpartition('.')
    return extension if dot else ''


def normalize_path(path, repository_root=None) -> str:
    """Return ``path`` relative to ``repository_root`` using ``/`` separators.

    Falls back to the absolute path when there is no root or ``path`` lies
    outside it.
    """
    path = Path(os.path.abspath(path))
    if repository_root is not None:
        try:
            relative = path.relative_to(os.path.abspath(repository_root))
        except ValueError:
            pass
        else:
            rel_str = relative.as_posix()
            return '' if rel_str == '.' else rel_str
    return path.as_posix().replace('\\', '/')


class FilterEngine:
    """Decide which files and directories take part in a copy run.

    Parameters
    ----------
    filter_opts : dict
        The ``filters`` section of the configuration. Rules may be
        :class:`rules.FilterRule` instances or plain mappings.
    repository_root : path-like, optional
        Root used to compute the relative paths rules are matched against.
    classify : callable, optional
        Returns a ``FileType(name, is_binary)`` for a path.
    hidden_check : callable, optional
        Returns whether the OS considers a path hidden.
    """

    def __init__(
        self,
        filter_opts,
        repository_root=None,
        *,
        classify=classify_file_type,
        hidden_check=is_hidden,
    ):
        filter_opts = filter_opts or {}
        self.repository_root = repository_root
        self.use_include_rules = bool(filter_opts.get('use_include_rules', False))
        self.use_exclude_rules = bool(filter_opts.get('use_exclude_rules', False))
        self.match_directories = bool(filter_opts.get('match_directories', True))
        self.match_hidden_files = bool(filter_opts.get('match_hidden_files', False))
        self.overlap_policy = parse_overlap_policy(filter_opts.get('overlap_policy'))
        self._classify = classify
        self._hidden_check = hidden_check
        self._verdict_cache: dict[str, bool] = {}

        self.include_rules = compile_rules(
            filter_opts.get('include_rules'), context='filters.include_rules'
        )
        self.exclude_rules = compile_rules(
            filter_opts.get('exclude_rules'), context='filters.exclude_rules'
        )
        self.directory_include_rules = [
            r for r in self.include_rules if r.source.apply_to_directories
        ]
        self.directory_exclude_rules = [
            r for r in self.exclude_rules if r.source.apply_to_directories
        ]

    def normalize_path(self, path) -> str:
        return normalize_path(path, self.repository_root)

    def should_enter_directory(self, directory) -> bool:
        """Return ``True`` if traversal may descend into ``directory``."""
        if not self.match_directories:
            return True

        rel_path = self.normalize_path(directory)
        included, excluded, reason = self._evaluate(directory, rel_path, is_directory=True)
        allowed = self.resolve_verdict(included, excluded, self.use_include_rules)
        if not allowed:
            if reason is not None:
                logging.debug("Skipping directory due to filters: %s (%s)", rel_path, reason)
            else:
                logging.debug("Skipping directory due to filters: %s", rel_path)
        return allowed

    def should_include(self, file_path, *, is_directory=False) -> tuple[bool, str | None]:
        """Return ``(included, reason)`` for ``file_path``.

        ``reason`` explains an exclusion and is ``None`` for included files
        and for verdicts served from the cache.
        """
        key = os.path.abspath(file_path)
        cached = self._verdict_cache.get(key)
        if cached is not None:
            return cached, None

        rel_path = self.normalize_path(file_path)
        if not self.match_hidden_files and self._is_hidden(file_path):
            self._verdict_cache[key] = False
            logging.debug("Filtered out: %s (%s)", rel_path, REASON_HIDDEN)
            return False, REASON_HIDDEN

        included, excluded, reason = self._evaluate(
            file_path, rel_path, is_directory=is_directory, check_hidden=False
        )
        verdict = self.resolve_verdict(included, excluded, self.use_include_rules)
        self._verdict_cache[key] = verdict
        if verdict:
            return True, None
        logging.debug("Filtered out: %s (%s)", rel_path, reason)
        return False, reason

    def _is_hidden(self, path) -> bool:
        try:
            return bool(self._hidden_check(path))
        except (OSError, ValueError) as exc:
            logging.debug("Hidden check failed for %s: %s", path, exc)
            return False

    def _evaluate(self, path, rel_path, *, is_directory, check_hidden=True):
        """Return ``(include_match, exclude_match, reason)`` for one path."""
        if check_hidden and not self.match_hidden_files and self._is_hidden(path):
            return False, False, REASON_HIDDEN

        rel_lower = rel_path.lower()

        if not self.use_include_rules:
            include_match = True
        else:
            rules = self.directory_include_rules if is_directory else self.include_rules
            if is_directory and not rules:
                # Most include rules target files; directories stay open.
                include_match = True
            else:
                include_match = any(
                    self.matches(r, path, rel_path, rel_lower, is_directory) for r in rules
                )

        if not self.use_exclude_rules:
            exclude_match = False
        else:
            rules = self.directory_exclude_rules if is_directory else self.exclude_rules
            exclude_match = any(
                self.matches(r, path, rel_path, rel_lower, is_directory) for r in rules
            )

        if self.use_include_rules and not include_match:
            reason = REASON_NOT_INCLUDED
        elif exclude_match:
            reason = REASON_EXCLUDED
        else:
            reason = None
        return include_match, exclude_match, reason

    def matches(self, rule: CompiledRule, path, rel_path, rel_lower, is_directory) -> bool:
        """Return ``True`` if ``rule`` matches the given path."""
        source = rule.source
        if is_directory and not source.apply_to_directories:
            return False

        haystack = rel_path if source.case_sensitive else rel_lower
        compiled = rule.compiled
        if isinstance(compiled, (RegexPattern, GlobPattern)):
            # Globs are anchored; plain regexes may match anywhere in the path.
            return compiled.pattern.search(haystack) is not None
        if isinstance(compiled, PathContains):
            return compiled.needle in haystack
        return self._primitive_match(source, path, haystack, is_directory)

    def _primitive_match(self, source, path, haystack, is_directory) -> bool:
        def adjust(value):
            return value if source.case_sensitive else value.lower()

        if source.type is MatchType.EXTENSION:
            if is_directory:
                return False
            extension = file_extension(Path(path).name)
            return adjust(extension) == adjust(source.pattern.removeprefix('.'))
        if source.type is MatchType.FILETYPE_ID:
            if is_directory:
                return False
            return adjust(self._classify(path).name) == adjust(source.pattern)
        if source.type is MatchType.PATH_CONTAINS:
            return adjust(source.pattern) in haystack
        return False

    def resolve_verdict(self, include_match, exclude_match, include_enabled) -> bool:
        """Combine include and exclude matches according to the overlap policy."""
        if self.overlap_policy is OverlapPolicy.INCLUDE_OVERRIDES:
            if include_enabled:
                return include_match or not exclude_match
            return not exclude_match
        if include_enabled:
            return include_match and not exclude_match
        return not exclude_match

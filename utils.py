import copy
import logging
import re
from pathlib import Path

from charset_normalizer import from_bytes
import yaml


FILE_PATH_PLACEHOLDER = "$FILE_PATH"
CURRENT_SCHEMA_VERSION = 2
CONFIG_FILENAMES = ('copycontent.yml', 'copycontent.yaml', '.copycontent.yml')

DEFAULT_CONFIG = {
    'logging': {
        'level': 'INFO',
    },
    'filters': {
        'use_include_rules': False,
        'use_exclude_rules': False,
        'match_directories': True,
        'match_hidden_files': False,
        'overlap_policy': 'exclude_overrides',
        'include_rules': [],
        'exclude_rules': [],
        'max_files': 30,
        'max_file_size_kb': 500,
    },
    'output': {
        'header_template': f"// file: {FILE_PATH_PLACEHOLDER}",
        'pre_text': "",
        'post_text': "",
        'extra_line_between_files': True,
        'file': None,
    },
    'reading': {
        'strict_memory_read': True,
    },
    'schema_version': CURRENT_SCHEMA_VERSION,
}

_PUNCTUATION_RE = re.compile(r'[;{}()\[\],]')


class ConfigNotFoundError(FileNotFoundError):
    """Raised when the configuration file cannot be found."""


class InvalidConfigError(Exception):
    """Raised when the configuration file is invalid."""


class InvalidPatternError(InvalidConfigError):
    """Raised when a filter rule's pattern cannot be compiled."""


class CopyContentError(Exception):
    """Raised when a copy run has no usable input."""


class NoSelectionError(CopyContentError):
    """Raised when no files or folders were selected."""


class InvalidRootError(CopyContentError):
    """Raised when a selected path or the repository root does not exist."""


def load_yaml_config(config_file_path):
    """Load a YAML configuration file with basic error handling."""
    logging.info("Loading configuration from: %s", config_file_path)
    try:
        with open(config_file_path, 'r', encoding='utf-8') as f:
            config = yaml.safe_load(f)
            if config is None:
                raise ValueError("Configuration file is empty or invalid.")
            if not isinstance(config, dict):
                raise ValueError("Configuration file must contain a mapping at the top level.")
            return config
    except FileNotFoundError as e:
        raise ConfigNotFoundError(
            f"Configuration file not found at '{config_file_path}'."
        ) from e
    except yaml.YAMLError as e:
        mark = getattr(e, 'problem_mark', None)
        location = ""
        if mark:
            location = f" at line {mark.line + 1}, column {mark.column + 1}"

        problem = getattr(e, 'problem', None) or str(e)
        context = getattr(e, 'context', None)
        details = f"{context}: {problem}" if context else problem

        hint = None
        if isinstance(e, yaml.scanner.ScannerError) and context:
            if 'quoted scalar' in context:
                hint = "Check for missing closing quotes in your YAML file."

        message = f"Error parsing YAML file{location}: {details}"
        if hint:
            message = f"{message} ({hint})"

        raise InvalidConfigError(message) from e
    except ValueError as e:
        raise InvalidConfigError(str(e)) from e


def read_file_best_effort(file_path):
    """Attempt to read a file trying several encodings.

    The function first attempts UTF-8 with BOM handling, then relies on
    ``charset-normalizer`` to identify a likely encoding before falling back to
    a permissive UTF-8 decode with replacements.

    ``OSError`` is propagated so the caller decides whether a failed read
    skips the file or aborts.
    """

    def _strip_bom(text):
        return text.lstrip('\ufeff')

    try:
        with open(file_path, 'r', encoding='utf-8-sig') as f:
            return _strip_bom(f.read())
    except UnicodeError:
        pass

    raw_bytes = Path(file_path).read_bytes()

    best_guess = from_bytes(raw_bytes).best()
    if best_guess and best_guess.encoding:
        encoding = best_guess.encoding
        if (
            encoding.lower().startswith('utf_16')
            and b'\x00' not in raw_bytes
            and len(raw_bytes) < 6
        ):
            encoding = 'latin-1'
        try:
            return _strip_bom(
                raw_bytes.decode(encoding, errors='replace')
            )
        except LookupError:
            logging.warning(
                "Detected encoding '%s' is not supported.", best_guess.encoding
            )

    logging.warning(
        "Could not detect encoding for %s; decoding with UTF-8 replacements.",
        file_path,
    )
    return _strip_bom(raw_bytes.decode('utf-8', errors='replace'))


def estimate_tokens(text):
    """Return a rough token estimate for ``text``.

    This is not a tokenizer: it counts whitespace-delimited words plus the
    punctuation characters ``;{}()[],``, which tend to be separate tokens in
    source code.
    """
    return len(text.split()) + len(_PUNCTUATION_RE.findall(text))


def content_statistics(content):
    """Return character, line, word and approximate token counts for ``content``."""
    return {
        'chars': len(content),
        'lines': content.count('\n') + 1 if content else 0,
        'words': len(content.split()),
        'tokens': estimate_tokens(content),
    }


def _require_bool(section, key, *, context):
    value = section.get(key)
    if value is not None and not isinstance(value, bool):
        raise InvalidConfigError(f"'{context}.{key}' must be a boolean value")


def _require_limit(section, key, *, context):
    value = section.get(key)
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidConfigError(
            f"'{context}.{key}' must be a non-negative integer or null"
        )


def _validate_output_section(config):
    """Validate the 'output' section of the configuration."""

    output_conf = config.get('output')
    if output_conf is None:
        return
    if not isinstance(output_conf, dict):
        raise InvalidConfigError("'output' section must be a dictionary")

    for key in ('header_template', 'pre_text', 'post_text', 'file'):
        value = output_conf.get(key)
        if value is not None and not isinstance(value, str):
            raise InvalidConfigError(f"'output.{key}' must be a string or null.")

    header = output_conf.get('header_template')
    if header and FILE_PATH_PLACEHOLDER not in header:
        logging.warning(
            "'output.header_template' does not contain %s; file paths will not appear in headers.",
            FILE_PATH_PLACEHOLDER,
        )

    _require_bool(output_conf, 'extra_line_between_files', context='output')


def _validate_reading_section(config):
    reading_conf = config.get('reading')
    if reading_conf is None:
        return
    if not isinstance(reading_conf, dict):
        raise InvalidConfigError("'reading' section must be a dictionary")
    _require_bool(reading_conf, 'strict_memory_read', context='reading')


def validate_config(config, *, source=None):
    """Apply ``DEFAULT_CONFIG`` to ``config`` in place and validate every section.

    Legacy filter settings are migrated before defaults are merged so that a
    missing ``schema_version`` is recognized as a legacy file.
    """
    import rules  # rules imports this module

    rules.migrate_legacy_filters(config)

    def apply_defaults(cfg, defs):
        for key, value in defs.items():
            if isinstance(value, dict):
                node = cfg.setdefault(key, {})
                if node is None:
                    node = cfg[key] = {}
                if isinstance(node, dict):
                    apply_defaults(node, value)
            else:
                cfg.setdefault(key, copy.deepcopy(value))

    apply_defaults(config, DEFAULT_CONFIG)

    filters = config.get('filters')
    if filters is not None and not isinstance(filters, dict):
        raise InvalidConfigError("'filters' section must be a dictionary")
    if filters is not None:
        for key in (
            'use_include_rules',
            'use_exclude_rules',
            'match_directories',
            'match_hidden_files',
        ):
            _require_bool(filters, key, context='filters')
        _require_limit(filters, 'max_files', context='filters')
        _require_limit(filters, 'max_file_size_kb', context='filters')

    try:
        rules.validate_filters_section(config)
    except InvalidConfigError as exc:
        if source:
            raise type(exc)(f"{exc} (from '{source}')") from exc
        raise
    _validate_output_section(config)
    _validate_reading_section(config)

    return config


def load_and_validate_config(config_file_path):
    """Load a YAML config file and merge it over ``DEFAULT_CONFIG``.

    Nested sections are merged recursively, so a file only needs the keys it
    changes.
    """
    config = load_yaml_config(config_file_path)
    return validate_config(config, source=config_file_path)


def validate_glob_pattern(pattern, *, context="glob pattern"):
    """Warn about potentially problematic glob patterns."""
    if not isinstance(pattern, str):
        raise InvalidConfigError(
            f"Glob pattern in {context} must be a string, but got: {type(pattern).__name__}"
        )

    normalized = pattern
    if '\\' in pattern:
        normalized = pattern.replace('\\', '/')
        logging.warning(
            "Glob pattern in %s ('%s') uses backslashes; treating them as '/' for cross-platform matching.",
            context,
            pattern,
        )

    if normalized.startswith('/') or (len(normalized) > 1 and normalized[1] == ':'):
        logging.warning(
            "Glob pattern in %s ('%s') looks like an absolute path. "
            "Patterns are matched against paths relative to the repository root. "
            "This may not work as expected.",
            context,
            pattern,
        )

    if '[' in normalized or ']' in normalized:
        logging.warning(
            "Glob pattern in %s ('%s') contains brackets. Character classes are "
            "not supported; '[' and ']' are matched literally. Special glob "
            "characters are *, ** and ?.",
            context,
            pattern,
        )

    return normalized


def validate_regex_pattern(pattern, *, context="regex pattern", flags=0):
    """Return a compiled regex after validating ``pattern``.

    Raises ``InvalidPatternError`` with a helpful message when ``pattern`` is
    invalid. ``context`` describes where the pattern originated so the error
    can guide the user to the right configuration entry.
    """

    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        raise InvalidPatternError(
            f"Invalid regex pattern in {context}: '{pattern}'. {exc}"
        ) from exc

import argparse
import logging
import os
import sys
from pathlib import Path

import yaml
from tqdm import tqdm

from filetypes import classify_file_type
from filter_engine import (
    REASON_EXCLUDED,
    REASON_HIDDEN,
    REASON_NOT_INCLUDED,
    FilterEngine,
    is_hidden,
)
from presets import PRESETS, merge_rules
from utils import (
    CONFIG_FILENAMES,
    DEFAULT_CONFIG,
    FILE_PATH_PLACEHOLDER,
    ConfigNotFoundError,
    CopyContentError,
    InvalidConfigError,
    InvalidRootError,
    NoSelectionError,
    content_statistics,
    load_and_validate_config,
    read_file_best_effort,
    validate_config,
)


VCS_MARKERS = ('.git', '.hg', '.svn')

_REASON_KEYS = {
    REASON_HIDDEN: 'hidden',
    REASON_NOT_INCLUDED: 'not_included',
    REASON_EXCLUDED: 'excluded',
}


def _progress_enabled(to_stdout):
    """Return ``True`` when a progress bar should be displayed."""

    if logging.getLogger().getEffectiveLevel() <= logging.DEBUG:
        return False
    if to_stdout:
        return False
    if os.getenv("CI"):
        return False
    return True


def find_repository_root(start):
    """Return the closest directory at or above ``start`` holding VCS metadata."""
    path = Path(os.path.abspath(start))
    if not path.is_dir():
        path = path.parent
    for candidate in (path, *path.parents):
        if any((candidate / marker).exists() for marker in VCS_MARKERS):
            return candidate
    return None


def _list_directory(directory, visited):
    """Return the children of ``directory`` sorted by name.

    ``visited`` holds the resolved directories seen in this run; a directory
    reached again through a symlink loop yields no children.
    """
    try:
        key = directory.resolve()
    except (OSError, RuntimeError):
        key = Path(os.path.abspath(directory))
    if key in visited:
        logging.debug("Skipping already visited directory: %s", directory)
        return []
    visited.add(key)

    try:
        return sorted(directory.iterdir(), key=lambda p: p.name)
    except OSError as exc:
        logging.warning("Unable to list '%s': %s. Skipping.", directory, exc)
        return []


def read_file_content(file_path, *, snapshots=None, prefer_snapshot=True):
    """Return the text of ``file_path``.

    ``snapshots`` maps absolute paths to in-memory buffers (for example,
    unsaved editor content). They are used when ``prefer_snapshot`` is set.
    ``OSError`` propagates to the caller.
    """
    if prefer_snapshot and snapshots:
        snapshot = snapshots.get(os.path.abspath(file_path))
        if snapshot is not None:
            return snapshot
    return read_file_best_effort(file_path)


class ContentCollector:
    """Walk selected paths and accumulate the formatted output of one run.

    Parameters
    ----------
    config : dict
        Validated configuration; ``filters``, ``output`` and ``reading`` are
        consulted.
    engine : FilterEngine
        Engine built for this run only.
    snapshots : dict, optional
        In-memory file contents keyed by path.
    classify : callable, optional
        File-type classifier used for the binary gate.
    progress : tqdm, optional
        Progress bar updated once per copied file.
    """

    def __init__(self, config, engine, *, snapshots=None, classify=classify_file_type, progress=None):
        filter_opts = config.get('filters') or {}
        output_opts = config.get('output') or {}
        reading_opts = config.get('reading') or {}

        self.engine = engine
        self.classify = classify
        self.progress = progress
        self.max_files = filter_opts.get('max_files') or 0
        self.max_size_bytes = (filter_opts.get('max_file_size_kb') or 0) * 1024
        self.header_template = output_opts.get(
            'header_template', DEFAULT_CONFIG['output']['header_template']
        ) or ""
        self.extra_line = bool(output_opts.get('extra_line_between_files', True))
        self.post_text = output_opts.get('post_text') or ""
        self.prefer_snapshot = bool(reading_opts.get('strict_memory_read', True))
        self.snapshots = {
            os.path.abspath(path): text for path, text in (snapshots or {}).items()
        }

        self.pieces = [output_opts.get('pre_text') or ""]
        self.copied_paths = set()
        self._visited_dirs = set()
        self.stats = {
            'total_files': 0,
            'total_chars': 0,
            'total_lines': 0,
            'total_words': 0,
            'total_tokens': 0,
            'limit_reached': False,
            'filter_reasons': {},
        }

    def _record(self, reason):
        reasons = self.stats['filter_reasons']
        reasons[reason] = reasons.get(reason, 0) + 1

    def _limit_reached(self):
        if self.stats['limit_reached']:
            return True
        if self.max_files and self.stats['total_files'] >= self.max_files:
            # Recorded once even though every enclosing directory stops too.
            self.stats['limit_reached'] = True
            self._record('file_limit')
            return True
        return False

    def process_entries(self, entries):
        """Process ``entries`` in order until the file limit is reached."""
        for entry in entries:
            if self._limit_reached():
                break
            if entry.is_dir():
                self.process_directory(entry)
            else:
                self.process_file(entry)

    def process_directory(self, directory):
        if not self.engine.should_enter_directory(directory):
            self._record('directory')
            return
        self.process_entries(_list_directory(directory, self._visited_dirs))

    def process_file(self, file_path):
        rel_path = self.engine.normalize_path(file_path)
        if rel_path in self.copied_paths:
            logging.debug("Skipping already copied file: %s", rel_path)
            self._record('duplicate')
            return
        self.copied_paths.add(rel_path)

        included, reason = self.engine.should_include(file_path)
        if not included:
            self._record(_REASON_KEYS.get(reason, 'filtered'))
            return

        if self.classify(file_path).is_binary:
            logging.info("Skipping file: %s - Binary file type", rel_path)
            self._record('binary')
            return

        try:
            size = file_path.stat().st_size
        except OSError as exc:
            logging.warning("Unable to stat '%s': %s. Skipping.", rel_path, exc)
            self._record('read_error')
            return
        if self.max_size_bytes and size > self.max_size_bytes:
            logging.info("Skipping file: %s - Size limit exceeded", rel_path)
            self._record('too_large')
            return

        try:
            content = read_file_content(
                file_path,
                snapshots=self.snapshots,
                prefer_snapshot=self.prefer_snapshot,
            )
        except OSError as exc:
            logging.warning("Failed to read '%s': %s. Skipping.", rel_path, exc)
            self._record('read_error')
            return

        self.pieces.append(self.header_template.replace(FILE_PATH_PLACEHOLDER, rel_path))
        self.pieces.append(content)
        if self.extra_line and content:
            self.pieces.append("")

        file_stats = content_statistics(content)
        self.stats['total_files'] += 1
        self.stats['total_chars'] += file_stats['chars']
        self.stats['total_lines'] += file_stats['lines']
        self.stats['total_words'] += file_stats['words']
        self.stats['total_tokens'] += file_stats['tokens']
        if self.progress is not None:
            self.progress.update(1)

    def compose(self):
        """Return the pre-text, file blocks and post-text joined by newlines."""
        return "\n".join([*self.pieces, self.post_text])


def _check_roots(roots, repository_root):
    if not roots:
        raise NoSelectionError("No files or folders selected.")
    paths = [Path(root) for root in roots]
    missing = [str(p) for p in paths if not p.exists()]
    if missing:
        raise InvalidRootError(f"Selected path(s) do not exist: {', '.join(missing)}")
    if repository_root is not None and not Path(repository_root).is_dir():
        raise InvalidRootError(f"Repository root '{repository_root}' is not a directory")
    return paths


def copy_file_contents(
    roots,
    config,
    *,
    repository_root=None,
    snapshots=None,
    classify=classify_file_type,
    hidden_check=is_hidden,
    show_progress=False,
):
    """Filter ``roots`` and combine the accepted files into one text.

    Returns ``(text, stats)``. ``text`` is ``None`` when no file qualified.
    ``stats['limit_reached']`` reports whether the file limit cut the run
    short. Raises :class:`NoSelectionError` or :class:`InvalidRootError`
    before any work when there is nothing usable to copy.
    """
    paths = _check_roots(roots, repository_root)
    engine = FilterEngine(
        config.get('filters') or {},
        repository_root,
        classify=classify,
        hidden_check=hidden_check,
    )

    with tqdm(desc="Copying files", unit="file", leave=False, disable=not show_progress) as bar:
        collector = ContentCollector(
            config, engine, snapshots=snapshots, classify=classify, progress=bar
        )
        collector.process_entries(paths)

    stats = collector.stats
    if stats['total_files'] == 0:
        return None, stats
    return collector.compose(), stats


def preview_filters(
    root,
    config,
    *,
    repository_root=None,
    classify=classify_file_type,
    hidden_check=is_hidden,
):
    """Return ``(path, included)`` pairs describing how filters treat ``root``.

    Rejected directories are listed once and not descended into. The file
    limit and the size and binary gates are not applied.
    """
    (root_path,) = _check_roots([root], repository_root)
    engine = FilterEngine(
        config.get('filters') or {},
        repository_root,
        classify=classify,
        hidden_check=hidden_check,
    )
    results = []
    visited = set()

    def visit(path):
        if path.is_dir():
            if not engine.should_enter_directory(path):
                results.append((path, False))
                return
            for child in _list_directory(path, visited):
                visit(child)
        else:
            included, _ = engine.should_include(path)
            results.append((path, included))

    visit(root_path)
    return results


def copy_to_clipboard(text):
    import pyperclip

    pyperclip.copy(text)
    logging.info("Copied combined output to clipboard.")


def _load_config(args):
    if args.config:
        return load_and_validate_config(args.config)

    for candidate in CONFIG_FILENAMES:
        if Path(candidate).is_file():
            logging.info("Auto-discovered config file: %s", candidate)
            return load_and_validate_config(candidate)

    logging.debug(
        "No config file found (checked: %s). Using default settings.",
        ", ".join(CONFIG_FILENAMES),
    )
    return validate_config({}, source="<defaults>")


def _apply_cli_overrides(config, args):
    filters = config['filters']
    for name in args.include_preset:
        filters['include_rules'] = merge_rules(filters.get('include_rules'), PRESETS[name])
        filters['use_include_rules'] = True
        logging.debug("Applied include preset: %s", name)
    for name in args.exclude_preset:
        filters['exclude_rules'] = merge_rules(filters.get('exclude_rules'), PRESETS[name])
        filters['use_exclude_rules'] = True
        logging.debug("Applied exclude preset: %s", name)
    if args.limit is not None:
        if args.limit < 0:
            raise InvalidConfigError("--limit must be zero (no limit) or a positive number")
        filters['max_files'] = args.limit
    if args.output:
        config['output']['file'] = args.output


def _print_summary(stats, max_files):
    title = "Copy Summary"
    print(f"\n--- {title} ---", file=sys.stderr)
    print(f"  Files Copied:     {stats['total_files']}", file=sys.stderr)
    print(f"  Characters:       {stats['total_chars']}", file=sys.stderr)
    print(f"  Lines:            {stats['total_lines']}", file=sys.stderr)
    print(f"  Words:            {stats['total_words']}", file=sys.stderr)
    print(f"  Token Estimate:   ~{stats['total_tokens']}", file=sys.stderr)
    reasons = stats.get('filter_reasons') or {}
    if reasons:
        breakdown = ", ".join(f"{key}: {count}" for key, count in sorted(reasons.items()))
        print(f"  Skipped:          {breakdown}", file=sys.stderr)
    if stats.get('limit_reached'):
        print(
            f"  WARNING: Output truncated due to file limit ({max_files} files).",
            file=sys.stderr,
        )
    print("-" * (len(title) + 8), file=sys.stderr)


def main():
    """Main function to parse arguments and run the tool."""
    parser = argparse.ArgumentParser(
        description=(
            "Combine the contents of selected files and folders into one text, "
            "filtered by include/exclude rules. Great for LLM prompts."
        )
    )
    parser.add_argument(
        "paths",
        nargs="*",
        help="Files and folders to copy, processed in the given order.",
    )

    config_group = parser.add_argument_group("Configuration")
    config_group.add_argument(
        "--config",
        help=f"The YAML file with your settings. Defaults to the first of: {', '.join(CONFIG_FILENAMES)}.",
    )
    config_group.add_argument(
        "--init",
        action="store_true",
        help=f"Write a default configuration file ({CONFIG_FILENAMES[0]}) in the current directory.",
    )
    config_group.add_argument(
        "--root",
        help="Repository root used for relative paths. Defaults to the enclosing VCS root or the current directory.",
    )
    config_group.add_argument(
        "--include-preset",
        action="append",
        default=[],
        choices=sorted(PRESETS),
        help="Merge a preset into the include rules and enable them. Can be used multiple times.",
    )
    config_group.add_argument(
        "--exclude-preset",
        action="append",
        default=[],
        choices=sorted(PRESETS),
        help="Merge a preset into the exclude rules and enable them. Can be used multiple times.",
    )
    config_group.add_argument(
        "--limit",
        type=int,
        help="Maximum number of files to copy (0 for no limit). Overrides the config.",
    )

    output_group = parser.add_argument_group("Output Options")
    output_group.add_argument(
        "--output",
        "-o",
        help="Save to a file instead of printing to stdout.",
    )
    output_group.add_argument(
        "--clipboard",
        "-c",
        action="store_true",
        help="Copy the result to your clipboard.",
    )
    output_group.add_argument(
        "--preview",
        action="store_true",
        help="List which files the filters include without copying anything.",
    )
    output_group.add_argument(
        "--all",
        action="store_true",
        help="With --preview, list excluded entries instead of included ones.",
    )

    runtime_group = parser.add_argument_group("Runtime Options")
    runtime_group.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show extra details to help solve problems.",
    )

    args = parser.parse_args()

    prelim_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(level=prelim_level, format='%(levelname)s: %(message)s')

    if args.init:
        target_config = Path(CONFIG_FILENAMES[0])
        if target_config.exists():
            logging.error("Config file '%s' already exists. Aborting init.", target_config)
            sys.exit(1)
        try:
            with open(target_config, 'w', encoding='utf-8') as f:
                f.write("# Default copycontent configuration\n")
                yaml.safe_dump(DEFAULT_CONFIG, f, sort_keys=False)
        except OSError as exc:
            logging.error("Failed to write config: %s", exc)
            sys.exit(1)
        logging.info("Created default configuration at %s", target_config.resolve())
        sys.exit(0)

    try:
        config = _load_config(args)
    except ConfigNotFoundError:
        logging.error(
            "Could not find the configuration file '%s'. "
            "Check the filename and your current working directory: %s",
            args.config,
            Path.cwd(),
        )
        logging.debug("Missing configuration details:", exc_info=True)
        sys.exit(1)
    except InvalidConfigError as e:
        logging.error("Invalid configuration: %s", e)
        logging.debug("Configuration validation traceback:", exc_info=True)
        sys.exit(1)

    # -v always wins over the configured level.
    if not args.verbose:
        level_str = (config.get('logging') or {}).get('level', 'INFO')
        log_level = getattr(logging, str(level_str).upper(), logging.INFO)
        logging.getLogger().setLevel(log_level)

    try:
        _apply_cli_overrides(config, args)
    except InvalidConfigError as e:
        logging.error("Invalid configuration: %s", e)
        sys.exit(1)

    if not args.paths:
        logging.error("No files selected.")
        sys.exit(1)

    if args.root:
        repository_root = Path(args.root)
    else:
        repository_root = find_repository_root(args.paths[0]) or Path.cwd()
    logging.debug("Repository root: %s", repository_root)

    if args.preview:
        try:
            included = excluded = 0
            for path in args.paths:
                for entry, allowed in preview_filters(
                    path, config, repository_root=repository_root
                ):
                    if allowed:
                        included += 1
                        if not args.all:
                            print(f"✓ {entry}")
                    else:
                        excluded += 1
                        if args.all:
                            print(f"✗ {entry}")
        except (CopyContentError, InvalidConfigError) as exc:
            logging.error(exc)
            sys.exit(1)
        if included + excluded == 0:
            print("(no files to display)")
        print(f"Included: {included}, Excluded: {excluded}", file=sys.stderr)
        return

    output_file = config['output'].get('file')
    to_stdout = not args.clipboard and not output_file

    try:
        text, stats = copy_file_contents(
            args.paths,
            config,
            repository_root=repository_root,
            show_progress=_progress_enabled(to_stdout),
        )
    except (CopyContentError, InvalidConfigError) as exc:
        logging.error(exc)
        logging.debug("Run failed:", exc_info=True)
        sys.exit(1)

    if text is None:
        logging.info(
            "No files qualified based on your current filtering rules and limits."
        )
        _print_summary(stats, config['filters'].get('max_files'))
        return

    if args.clipboard:
        copy_to_clipboard(text)
    elif output_file:
        try:
            Path(output_file).write_text(text, encoding='utf-8')
        except OSError as exc:
            logging.error("Failed to write output file '%s': %s", output_file, exc)
            sys.exit(1)
        logging.info("Wrote combined output to %s", output_file)
    else:
        sys.stdout.write(text)
        if not text.endswith("\n"):
            sys.stdout.write("\n")

    file_word = "file" if stats['total_files'] == 1 else "files"
    logging.info("%d %s copied.", stats['total_files'], file_word)
    _print_summary(stats, config['filters'].get('max_files'))


if __name__ == "__main__":
    main()

"""Predefined rule sets to bootstrap common configurations."""

from rules import FilterRule, MatchType, parse_rule


COMMON_SOURCE_FILES = [
    # File types stay stable across upper- and lowercase extensions.
    FilterRule(True, MatchType.FILETYPE_ID, "JAVA"),
    FilterRule(True, MatchType.FILETYPE_ID, "Kotlin"),
    FilterRule(True, MatchType.FILETYPE_ID, "Groovy"),
    FilterRule(True, MatchType.FILETYPE_ID, "Scala"),
    FilterRule(True, MatchType.FILETYPE_ID, "Markdown"),
    # Web
    FilterRule(True, MatchType.EXTENSION, "ts"),
    FilterRule(True, MatchType.EXTENSION, "tsx"),
    FilterRule(True, MatchType.EXTENSION, "js"),
    FilterRule(True, MatchType.EXTENSION, "jsx"),
    FilterRule(True, MatchType.EXTENSION, "css"),
    FilterRule(True, MatchType.EXTENSION, "scss"),
    FilterRule(True, MatchType.EXTENSION, "json"),
    FilterRule(True, MatchType.EXTENSION, "yaml"),
    FilterRule(True, MatchType.EXTENSION, "yml"),
    # Build and config
    FilterRule(True, MatchType.GLOB, "**/*.gradle.kts"),
    FilterRule(True, MatchType.EXTENSION, "gradle"),
    FilterRule(True, MatchType.EXTENSION, "toml"),
    FilterRule(True, MatchType.EXTENSION, "properties"),
    FilterRule(True, MatchType.EXTENSION, "xml"),
    FilterRule(True, MatchType.EXTENSION, "sh"),
    FilterRule(True, MatchType.EXTENSION, "bat"),
]

IGNORE_BUILD_OUTPUTS = [
    FilterRule(True, MatchType.PATH_CONTAINS, "/build/", False, True),
    FilterRule(True, MatchType.PATH_CONTAINS, "/out/", False, True),
    FilterRule(True, MatchType.PATH_CONTAINS, "/target/", False, True),
    FilterRule(True, MatchType.PATH_CONTAINS, "/.gradle/", False, True),
    FilterRule(True, MatchType.PATH_CONTAINS, "/.idea/", False, True),
    FilterRule(True, MatchType.PATH_CONTAINS, "/node_modules/", False, True),
    FilterRule(True, MatchType.GLOB, "**/*.min.*", False, False),
    FilterRule(True, MatchType.GLOB, "**/*.map", False, False),
]

PRESETS = {
    'common-source-files': COMMON_SOURCE_FILES,
    'ignore-build-outputs': IGNORE_BUILD_OUTPUTS,
}


def merge_rules(existing, preset):
    """Return ``existing`` followed by the ``preset`` rules it lacks.

    Rules compare by value, so a preset applied twice adds nothing the
    second time.
    """
    merged = []
    for i, entry in enumerate(list(existing or ()) + list(preset)):
        rule = parse_rule(entry, context=f"rules[{i}]")
        if rule not in merged:
            merged.append(rule)
    return merged

"""
Ensures a Next.js application builds with standalone output.

Patching works on a masked copy of the config source in which comments and
string contents are blanked out, so property and export lookups never match
inside them. Offsets in the masked copy equal offsets in the original.
"""

import json
import logging
import os
import re
from typing import List, Optional

from obtura.build_mcp_server.utils.errors import ConfigPatchError
from obtura.build_mcp_server.utils.templates import render_template

logger = logging.getLogger(__name__)

CONFIG_NAMES = ("next.config.js", "next.config.mjs", "next.config.ts", "next.config.cjs")
STANDALONE = "standalone"

OUTPUT_PROPERTY = re.compile(r"(?<![\w$.])output\s*:\s*")
EXPORT_LITERALS = (
    re.compile(r"module\.exports\s*=\s*\{"),
    re.compile(r"export\s+default\s+\{"),
)
NAMED_LITERAL = re.compile(r"\b(?:const|let|var)\s+([A-Za-z_$][\w$]*)(?:\s*:\s*[\w$.]+)?\s*=\s*\{")

SHORTHAND_OUTPUT = re.compile(r"[{,]\s*output\s*(?=[,}])")
QUOTED_KEY = re.compile(r"[{,]\s*(['\"`])")
COMPUTED_KEY = re.compile(r"[{,]\s*\[")
SPREAD = re.compile(r"\.\.\.")


def _matching_brace(masked: str, open_brace: int) -> Optional[int]:
    depth = 0
    for i in range(open_brace, len(masked)):
        if masked[i] == "{":
            depth += 1
        elif masked[i] == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def _enclosing_brace(masked: str, pos: int) -> Optional[int]:
    depth = 0
    for i in range(pos - 1, -1, -1):
        if masked[i] == "}":
            depth += 1
        elif masked[i] == "{":
            if depth == 0:
                return i
            depth -= 1
    return None


def _top_level_view(masked: str, open_brace: int, close_brace: int) -> str:
    """The literal with the contents of nested brackets blanked, offsets kept."""
    view = list(masked[open_brace:close_brace + 1])
    depth = 0
    for k in range(1, len(view) - 1):
        c = view[k]
        if c in "{[(":
            if depth:
                view[k] = " "
            depth += 1
        elif c in "}])":
            depth -= 1
            if depth:
                view[k] = " "
        elif depth and c != "\n":
            view[k] = " "
    return "".join(view)


def output_setters(source: str, masked: str, open_brace: int) -> Optional[List[int]]:
    """
    Offsets of the top-level entries of a config literal that can set output.

    Besides output properties this counts shorthand and quoted output keys,
    computed keys and spreads, whose effect on output is unknown.

    Returns:
        Sorted offsets, or None when the literal is not closed
    """
    close_brace = _matching_brace(masked, open_brace)
    if close_brace is None:
        return None
    view = _top_level_view(masked, open_brace, close_brace)
    found = [m.start() for m in OUTPUT_PROPERTY.finditer(view)]
    found += [m.start() for m in SHORTHAND_OUTPUT.finditer(view)]
    found += [m.start() for m in COMPUTED_KEY.finditer(view)]
    found += [m.start() for m in SPREAD.finditer(view)]
    for m in QUOTED_KEY.finditer(view):
        quote = re.escape(m.group(1))
        if re.match(rf"output{quote}\s*:", source[open_brace + m.end():]):
            found.append(m.start())
    return sorted(open_brace + offset for offset in found)


def _is_last_setter(source: str, masked: str, output_match) -> bool:
    open_brace = _enclosing_brace(masked, output_match.start())
    if open_brace is None:
        return False
    setters = output_setters(source, masked, open_brace)
    return bool(setters) and setters[-1] == output_match.start()


def mask_source(source: str) -> str:
    """Blanks comments and string literal contents, keeping offsets and newlines."""
    out = list(source)
    i, n = 0, len(source)

    def blank(start: int, end: int) -> None:
        for k in range(start, end):
            if out[k] != "\n":
                out[k] = " "

    while i < n:
        c = source[i]
        if source.startswith("//", i):
            end = source.find("\n", i)
            end = n if end == -1 else end
            blank(i, end)
            i = end
        elif source.startswith("/*", i):
            end = source.find("*/", i + 2)
            end = n if end == -1 else end + 2
            blank(i, end)
            i = end
        elif c in "'\"`":
            j = i + 1
            while j < n and source[j] != c:
                if source[j] == "\\":
                    j += 1
                elif source[j] == "\n" and c != "`":
                    break
                j += 1
            blank(i + 1, min(j, n))
            i = j + 1
        else:
            i += 1
    return "".join(out)


def find_config_file(app_dir: str) -> Optional[str]:
    for name in CONFIG_NAMES:
        if os.path.isfile(os.path.join(app_dir, name)):
            return name
    return None


def _string_value_at(source: str, pos: int):
    """Returns (quote, start, end) of a string literal starting at pos, or None."""
    if pos >= len(source) or source[pos] not in "'\"`":
        return None
    quote = source[pos]
    end = source.find(quote, pos + 1)
    if end == -1:
        return None
    return quote, pos + 1, end


def find_output_declaration(source: str, masked: Optional[str] = None):
    """Finds the string value of the first output property as (quote, start, end, value)."""
    masked = mask_source(source) if masked is None else masked
    for match in OUTPUT_PROPERTY.finditer(masked):
        literal = _string_value_at(source, match.end())
        if literal is None:
            # Non-literal output values cannot be rewritten safely
            return None, match
        quote, start, end = literal
        return (quote, start, end, source[start:end]), match
    return None, None


def has_standalone_output(source: str) -> bool:
    declaration, _ = find_output_declaration(source)
    return declaration is not None and declaration[3] == STANDALONE


def _rewrite_output(source: str, declaration) -> str:
    _, start, end, _ = declaration
    return source[:start] + STANDALONE + source[end:]


def _find_config_literal(masked: str) -> Optional[int]:
    """Returns the offset just past the opening brace of the exported config literal."""
    for pattern in EXPORT_LITERALS:
        match = pattern.search(masked)
        if match:
            return match.end()

    for match in NAMED_LITERAL.finditer(masked):
        name = re.escape(match.group(1))
        exported = re.search(
            rf"(?:module\.exports\s*=|export\s+default)[^;\n]*(?<![\w$]){name}(?![\w$])", masked
        )
        if exported:
            return match.end()
    return None


def _inject_output(source: str, brace_end: int) -> str:
    rest = source[brace_end:]
    if rest.lstrip().startswith("}"):
        insertion = f"\n  output: '{STANDALONE}',\n"
    else:
        insertion = f"\n  output: '{STANDALONE}',"
    return source[:brace_end] + insertion + rest


def _is_esm_package(app_dir: str) -> bool:
    path = os.path.join(app_dir, "package.json")
    if not os.path.isfile(path):
        return False
    try:
        with open(path, "r", encoding="utf-8") as f:
            package = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Could not read {path}: {e}")
        return False
    return isinstance(package, dict) and package.get("type") == "module"


def _module_style(config_name: str, esm_package: bool) -> str:
    extension = os.path.splitext(config_name)[1]
    if extension in (".mjs", ".ts"):
        return "esm"
    if extension == ".cjs":
        return "cjs"
    return "esm" if esm_package else "cjs"


def _write(path: str, content: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(content)


def _wrap_config(app_dir: str, config_name: str) -> List[str]:
    base, extension = os.path.splitext(config_name)
    base_name = f"{base}.base{extension}"
    base_path = os.path.join(app_dir, base_name)
    if os.path.exists(base_path):
        raise ConfigPatchError(
            f"Cannot wrap {config_name}: {base_name} already exists", app_path=app_dir
        )

    style = _module_style(config_name, _is_esm_package(app_dir))
    wrapper = render_template(
        "next.config.js.j2",
        module_style=style,
        base_config=f"./{base}.base" if extension == ".ts" else f"./{base_name}",
        typescript=extension == ".ts",
    )
    os.replace(os.path.join(app_dir, config_name), base_path)
    _write(os.path.join(app_dir, config_name), wrapper)
    logger.info(f"Wrapped {config_name} to merge standalone output over {base_name}")
    return [base_name, config_name]


def ensure_standalone_output(app_dir: str) -> List[str]:
    """
    Makes the Next.js config in app_dir declare standalone output.

    Tries, in order: leave an existing standalone declaration alone, rewrite a
    differently valued string output property, inject the property into the
    exported config literal, and finally move the config aside and write a
    wrapper that merges the property over it. Without any config one is
    created.

    Args:
        app_dir: Absolute path of the Next.js application

    Returns:
        File names (relative to app_dir) that were written; empty when the
        config already declared standalone output

    Raises:
        ConfigPatchError: If the config cannot be read or written
    """
    try:
        config_name = find_config_file(app_dir)
        if config_name is None:
            config_name = "next.config.mjs" if _is_esm_package(app_dir) else "next.config.js"
            content = render_template(
                "next.config.js.j2",
                module_style="esm" if config_name.endswith(".mjs") else "cjs",
                base_config=None,
                typescript=False,
            )
            _write(os.path.join(app_dir, config_name), content)
            logger.info(f"Created {config_name} with standalone output")
            return [config_name]

        config_path = os.path.join(app_dir, config_name)
        with open(config_path, "r", encoding="utf-8") as f:
            source = f.read()
        masked = mask_source(source)

        declaration, output_match = find_output_declaration(source, masked)
        # A later duplicate key, shorthand or spread would override the declaration
        if declaration is not None and _is_last_setter(source, masked, output_match):
            if declaration[3] == STANDALONE:
                logger.debug(f"{config_name} already declares standalone output")
                return []
            _write(config_path, _rewrite_output(source, declaration))
            logger.info(f"Rewrote output '{declaration[3]}' to standalone in {config_name}")
            return [config_name]

        if output_match is None:
            brace_end = _find_config_literal(masked)
            if brace_end is not None and output_setters(source, masked, brace_end - 1) == []:
                _write(config_path, _inject_output(source, brace_end))
                logger.info(f"Injected standalone output into {config_name}")
                return [config_name]

        return _wrap_config(app_dir, config_name)
    except OSError as e:
        raise ConfigPatchError(f"Failed to update Next.js config: {e}", app_path=app_dir) from e

#!/usr/bin/env python3
"""
Add a new unary function to rustad.

This script extends the set of unary operators by:
- Registering the function in every host file that lists the unary functions
  (FloatCore trait, AzFloat, NumVec and AD implementations, operator ids)
- Creating src/op/<name>.rs from the sin operator in src/op/sin.rs

Every edit is computed and checked in memory first. Nothing is written unless
all of the registries accept the new name, so a failed run leaves the source
tree as it was.

The derivative functions of the new operator still have to be written by
hand; the steps are listed at the end of a successful run.
"""

import argparse
import os
import re
import shutil
import subprocess
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

ROOT_MARKER = "Cargo.toml"
NAME_PATTERN = re.compile(r"[a-z][a-z0-9]*")


# =============================================================================
# Errors
# =============================================================================

class GeneratorError(RuntimeError):
    """Base class for every error that aborts a run."""


class InvocationError(GeneratorError):
    """Run outside of a rustad source tree (or without the tools it needs)."""


class ConfirmationDeclined(GeneratorError):
    pass


class WorkspaceError(GeneratorError):
    pass


class RegistryError(GeneratorError):
    """A host file does not have the structure its registry entry expects."""


class DuplicateVariantError(GeneratorError):
    pass


class InvalidNameError(GeneratorError):
    pass


def get_project_root() -> Path:
    """Find the crate root (directory containing Cargo.toml)."""
    script_dir = Path(__file__).resolve().parent
    # Script is in scripts/, so parent is crate root
    root = script_dir.parent
    if not (root / ROOT_MARKER).exists():
        # Try going up one more level
        root = root.parent
    if not (root / ROOT_MARKER).exists():
        raise InvocationError(f"Could not find crate root (no {ROOT_MARKER} found)")
    return root


def check_root(root: Path) -> Path:
    if not (root / ROOT_MARKER).is_file():
        raise InvocationError(f"{root} is not a crate root (no {ROOT_MARKER} found)")
    return root


def read_source(path: Path) -> str:
    # newline="" keeps CRLF line endings intact
    with open(path, encoding="utf-8", newline="") as f:
        return f.read()


def write_source(path: Path, content: str) -> None:
    """Replace path with content through a temporary sibling file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.new_unary")
    try:
        with open(tmp, "w", encoding="utf-8", newline="") as f:
            f.write(content)
        if path.exists():
            shutil.copymode(path, tmp)
        os.replace(tmp, path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


# =============================================================================
# Names
# =============================================================================

@dataclass(frozen=True)
class Variant:
    """A unary function name and the spellings derived from it."""

    name: str
    upper: str

    @property
    def subs(self) -> Dict[str, str]:
        return {"name": self.name, "NAME": self.upper}


def to_upper(name: str) -> str:
    """Convert to uppercase (for operator ids)."""
    return name.upper()


def derive_variant(name: str) -> Variant:
    if not name or not name.strip():
        raise InvalidNameError("name of the new unary function is empty")
    if not NAME_PATTERN.fullmatch(name):
        raise InvalidNameError(
            f"'{name}' is not a valid name: use lowercase alphanumeric starting with a letter"
        )
    return Variant(name, to_upper(name))


def read_name(ask: Optional[Callable[[str], str]] = None) -> Variant:
    ask = ask or input
    try:
        name = ask("Input name of new unary function: ")
    except EOFError:
        raise InvalidNameError("no name given") from None
    return derive_variant(name.strip())


# =============================================================================
# Host File Registry
# =============================================================================

@dataclass(frozen=True)
class HostEntry:
    """One registry of unary functions inside a host file.

    path:
        File path relative to the crate root.
    anchor:
        Marker line (compared without surrounding whitespace) that starts
        the block of registered functions.
    template:
        Snippet appended to the block. Lines are written without
        indentation; the anchor's indentation is added when inserting.
    block_end:
        Regular expression; a stripped line that fully matches it ends
        the block. Blank lines and lines indented less than the anchor
        always end it.
    expected:
        Number of times the anchor must appear in the file.
    """

    path: str
    anchor: str
    template: str
    block_end: Optional[str] = None
    expected: int = 1

    def render(self, variant: Variant) -> List[str]:
        return self.template.format(**variant.subs).split("\n")


HOST_FILES: List[HostEntry] = [
    HostEntry(
        "src/float/core.rs",
        "// unary functions",
        "//\n// {name}\nfn {name}(&self) -> Self;",
    ),
    HostEntry(
        "src/float/az_float.rs",
        "// unary functions",
        "fn {name}(&self) -> Self {{ Self( self.0.{name}() ) }}",
    ),
    HostEntry(
        "src/float/num_vec.rs",
        "// unary functions",
        "impl_unary_float_core!({name});",
    ),
    HostEntry(
        "src/ad/float_core.rs",
        "// unary functions",
        "impl_unary_float_core!({name});",
    ),
    HostEntry(
        "src/op/id.rs",
        "// Unary Operators",
        "/// {name}\n{NAME}_OP,",
        block_end=r"//",
    ),
]


def validate_registry(entries: Sequence[HostEntry]) -> None:
    """Reject registry entries that could never be applied."""
    if not entries:
        raise RegistryError("host file registry is empty")
    probe = Variant("probe", "PROBE")
    seen = set()
    for entry in entries:
        where = f"{entry.path} ({entry.anchor!r})"
        if (entry.path, entry.anchor) in seen:
            raise RegistryError(f"{where}: listed twice in the registry")
        seen.add((entry.path, entry.anchor))
        if not entry.anchor.strip():
            raise RegistryError(f"{entry.path}: empty anchor")
        if entry.expected < 1:
            raise RegistryError(f"{where}: expected count must be at least 1")
        try:
            entry.render(probe)
        except (KeyError, IndexError, ValueError) as e:
            raise RegistryError(f"{where}: bad snippet template: {e}") from e
        if entry.block_end is not None:
            try:
                re.compile(entry.block_end)
            except re.error as e:
                raise RegistryError(f"{where}: bad block_end pattern: {e}") from e


# =============================================================================
# Anchor-Based Inserter
# =============================================================================

def registry_token(token: str) -> "re.Pattern[str]":
    """Match token when it is not part of a longer word (underscores split words)."""
    return re.compile(rf"(?<![A-Za-z0-9]){re.escape(token)}(?![A-Za-z0-9])")


def leading_space(line: str) -> str:
    return line[: len(line) - len(line.lstrip(" \t"))]


def line_ending(line: str) -> str:
    if line.endswith("\r\n"):
        return "\r\n"
    if line.endswith(("\n", "\r")):
        return line[-1]
    return ""


class ExtensionPoint:
    """An anchor line followed by the block of functions registered after it."""

    def __init__(self, entry: HostEntry, lines: List[str]):
        self.entry = entry
        self.lines = lines
        self.indent = leading_space(lines[0])
        self.newline = line_ending(lines[0]) or "\n"

    @property
    def block(self) -> List[str]:
        return self.lines[1:]

    def has_token(self, token: str) -> bool:
        pattern = registry_token(token)
        return any(pattern.search(line) for line in self.block)

    def append(self, snippet: List[str]) -> None:
        at_eof = not line_ending(self.lines[-1])
        if at_eof:
            self.lines[-1] += self.newline
        new_lines = [
            (self.indent + line if line else "") + self.newline for line in snippet
        ]
        if at_eof:
            new_lines[-1] = new_lines[-1][: -len(self.newline)]
        self.lines.extend(new_lines)


def find_block_end(lines: List[str], start: int, entry: HostEntry) -> int:
    """Index of the first line after the block that starts at lines[start]."""
    indent = len(leading_space(lines[start]))
    stop = re.compile(entry.block_end) if entry.block_end else None
    i = start + 1
    while i < len(lines):
        stripped = lines[i].strip()
        if not stripped or len(leading_space(lines[i])) < indent:
            break
        if stop is not None and stop.fullmatch(stripped):
            break
        i += 1
    return i


class HostFile:
    """A host file split into plain lines and extension points."""

    def __init__(self, path: str, parts: List[Union[str, ExtensionPoint]]):
        self.path = path
        self.parts = parts

    @classmethod
    def parse(cls, path: str, text: str, entries: Sequence[HostEntry]) -> "HostFile":
        lines = text.splitlines(keepends=True)

        starts: Dict[int, HostEntry] = {}
        for entry in entries:
            hits = [i for i, line in enumerate(lines) if line.strip() == entry.anchor]
            if not hits:
                raise RegistryError(f"{path}: anchor {entry.anchor!r} not found")
            if len(hits) != entry.expected:
                raise RegistryError(
                    f"{path}: anchor {entry.anchor!r} found {len(hits)} times, "
                    f"expected {entry.expected}"
                )
            for i in hits:
                if i in starts:
                    raise RegistryError(
                        f"{path}: line {i + 1} is the anchor of more than one entry"
                    )
                starts[i] = entry

        parts: List[Union[str, ExtensionPoint]] = []
        i = 0
        while i < len(lines):
            entry = starts.get(i)
            if entry is None:
                parts.append(lines[i])
                i += 1
                continue
            end = find_block_end(lines, i, entry)
            nested = [j for j in starts if i < j < end]
            if nested:
                raise RegistryError(
                    f"{path}: anchor {starts[nested[0]].anchor!r} on line "
                    f"{nested[0] + 1} is inside the block of {entry.anchor!r}"
                )
            parts.append(ExtensionPoint(entry, lines[i:end]))
            i = end
        return cls(path, parts)

    def points(self) -> List[ExtensionPoint]:
        return [part for part in self.parts if isinstance(part, ExtensionPoint)]

    def render(self) -> str:
        return "".join(
            "".join(part.lines) if isinstance(part, ExtensionPoint) else part
            for part in self.parts
        )


def insert_variant(
    root: Path, entries: Sequence[HostEntry], variant: Variant
) -> Dict[Path, str]:
    """Return the new text of every host file; nothing is written."""
    by_file: Dict[str, List[HostEntry]] = {}
    for entry in entries:
        by_file.setdefault(entry.path, []).append(entry)

    changes: Dict[Path, str] = {}
    for rel_path, file_entries in by_file.items():
        path = root / rel_path
        if not path.is_file():
            raise RegistryError(f"host file {rel_path} does not exist")
        host = HostFile.parse(rel_path, read_source(path), file_entries)
        for point in host.points():
            for token in (variant.name, variant.upper):
                if point.has_token(token):
                    raise DuplicateVariantError(
                        f"{rel_path}: {token} is already registered after "
                        f"{point.entry.anchor!r}"
                    )
            point.append(point.entry.render(variant))
        changes[path] = host.render()
    return changes


# =============================================================================
# Template Instantiator
# =============================================================================

EXEMPLAR = Variant("sin", "SIN")
EXEMPLAR_PATH = "src/op/sin.rs"
DERIVED_DIR = "src/op"

# Characters that delimit the exemplar's name in src/op/sin.rs:
#   "sin"  id::SIN_OP  forward_dyp!(sin)  sin_rust_src  the sin operator
TOKEN_DELIMITERS = '":() _'

# Applied after the token substitution; [SIN_OP is not delimited above.
RANK_REWRITES = [
    "{NAME}_OP as usize",
]


def exemplar_token(token: str) -> "re.Pattern[str]":
    delimiters = re.escape(TOKEN_DELIMITERS)
    return re.compile(rf"(?<=[{delimiters}]){re.escape(token)}(?=[{delimiters}])")


def exemplar_template(text: str, exemplar: Variant = EXEMPLAR) -> str:
    """Turn the exemplar source into a str.format template with {name} and {NAME}."""
    template = text.replace("{", "{{").replace("}", "}}")
    for token, field_name in ((exemplar.name, "name"), (exemplar.upper, "NAME")):
        template = exemplar_token(token).sub("{" + field_name + "}", template)
    for rewrite in RANK_REWRITES:
        template = template.replace(rewrite.format(**exemplar.subs), rewrite)
    return template


def instantiate(
    root: Path,
    variant: Variant,
    exemplar: Variant = EXEMPLAR,
    exemplar_path: str = EXEMPLAR_PATH,
    derived_dir: str = DERIVED_DIR,
) -> Tuple[Path, str]:
    """Return the path and text of the new operator file; nothing is written."""
    source = root / exemplar_path
    if not source.is_file():
        raise InvocationError(f"exemplar {exemplar_path} not found in {root}")
    if variant.name == exemplar.name:
        raise DuplicateVariantError(f"{variant.name} is the exemplar operator")

    target = root / derived_dir / f"{variant.name}.rs"
    if target.exists():
        raise DuplicateVariantError(f"{derived_dir}/{target.name} already exists")

    template = exemplar_template(read_source(source), exemplar)
    return target, template.format(**variant.subs)


# =============================================================================
# Workspace Guard
# =============================================================================

def confirm(prompt: str, ask: Optional[Callable[[str], str]] = None) -> bool:
    ask = ask or input
    try:
        answer = ask(prompt)
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def guard_workspace(
    root: Path,
    script: Optional[Path] = None,
    assume_yes: bool = False,
    reset: bool = True,
    dry_run: bool = False,
    ask: Optional[Callable[[str], str]] = None,
) -> None:
    """Confirm with the user, then git reset --hard keeping this script."""
    print("Warning, this will git reset --hard: all uncommitted changes are lost")
    if not assume_yes and not confirm("Continue? [y/N] ", ask):
        raise ConfirmationDeclined("aborted by user, no files were changed")
    if not reset:
        return
    if dry_run:
        print(f"  [dry-run] Would run: git reset --hard in {root}")
        return

    git = shutil.which("git")
    if git is None:
        raise InvocationError("git not found (use --no-reset to skip the reset)")

    keep = (
        script is not None
        and script.is_file()
        and script.resolve().is_relative_to(root.resolve())
    )
    with tempfile.TemporaryDirectory() as tmp:
        saved = Path(tmp) / script.name if keep else None
        if saved is not None:
            shutil.copy2(script, saved)
        try:
            result = subprocess.run(
                [git, "reset", "--hard"],
                cwd=root, capture_output=True, text=True
            )
        except OSError as e:
            raise WorkspaceError(f"could not run git reset --hard: {e}") from e
        finally:
            if saved is not None:
                shutil.copy2(saved, script)

    if result.returncode != 0:
        raise WorkspaceError(f"git reset --hard failed: {result.stderr.strip()}")
    print(f"  Reset: {root}")


# =============================================================================
# File Generation
# =============================================================================

def commit_changes(changes: Dict[Path, str], dry_run: bool = False) -> None:
    """Write all changes, or none of them."""
    if dry_run:
        for path in changes:
            action = "update" if path.exists() else "create"
            print(f"  [dry-run] Would {action}: {path}")
        return

    done: List[Tuple[Path, Optional[str]]] = []
    for path, content in changes.items():
        original = read_source(path) if path.exists() else None
        try:
            write_source(path, content)
        except OSError as e:
            for written, text in reversed(done):
                if text is None:
                    written.unlink()
                else:
                    write_source(written, text)
            raise GeneratorError(
                f"could not write {path}: {e} (restored {len(done)} file(s))"
            ) from e
        done.append((path, original))

    for path, original in done:
        print(f"  {'Updated' if original is not None else 'Created'}: {path}")


def generate_variant(
    root: Path,
    variant: Variant,
    entries: Sequence[HostEntry] = HOST_FILES,
    dry_run: bool = False,
) -> Dict[Path, str]:
    """Register variant in every host file and create its operator file."""
    validate_registry(entries)

    print(f"\nAdding unary function: {variant.name} ({variant.upper}_OP)")
    changes = insert_variant(root, entries, variant)
    target, text = instantiate(root, variant)
    changes[target] = text

    print("\nWriting files:")
    commit_changes(changes, dry_run)
    return changes


# =============================================================================
# Follow-Up Reporter
# =============================================================================

FOLLOW_UP = [
    "In src/op/{name}.rs replace panic_der for forward_der_* and reverse_der_*\n"
    "     with {name}_forward_der and {name}_reverse_der",
    "Add a worked example that uses {name} (see examples/)",
    "Add test_{name} to tests/unary.rs",
    "Run bin/check_all.sh",
]


def report_follow_up(variant: Variant) -> None:
    print(f"\nTo finish the {variant.name} operator:")
    for i, step in enumerate(FOLLOW_UP, 1):
        print(f"  {i}. {step.format(**variant.subs)}")


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Add a new unary function to rustad",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
The working tree is reset (git reset --hard) before any file is edited,
this script itself is kept. Use --no-reset on a tree you know is clean.

Examples:
  %(prog)s                        # Prompt for the name
  %(prog)s cos                    # Add cos
  %(prog)s tan --dry-run          # Preview what would be changed
  %(prog)s tan --yes --no-reset   # No questions, no reset
"""
    )

    parser.add_argument(
        "name",
        nargs="?",
        help="Name of the new unary function (lowercase, e.g., 'cos')"
    )

    parser.add_argument(
        "--root",
        help="Crate root (default: found from the location of this script)"
    )

    parser.add_argument(
        "-y", "--yes",
        action="store_true",
        help="Do not ask before resetting the working tree"
    )

    parser.add_argument(
        "--no-reset",
        action="store_true",
        help="Do not run git reset --hard"
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be changed without making changes"
    )

    args = parser.parse_args(argv)

    try:
        # Validate name before the reset
        variant = derive_variant(args.name) if args.name is not None else None
        root = check_root(Path(args.root)) if args.root else get_project_root()

        guard_workspace(
            root,
            script=Path(__file__).resolve(),
            assume_yes=args.yes,
            reset=not args.no_reset,
            dry_run=args.dry_run,
        )
        if variant is None:
            variant = read_name()

        generate_variant(root, variant, dry_run=args.dry_run)
    except GeneratorError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    report_follow_up(variant)
    print("\nnew_unary: OK")
    return 0


if __name__ == "__main__":
    sys.exit(main())

"""Heuristic classification and resolution of git conflict markers.

Only already-marked conflicts are handled; this is not a three-way merge.
Each <<<<<<< / ======= / >>>>>>> block is classified by the first matching
rule:

    import      both sides are import-style lines   -> union, 0.95
    formatting  sides differ only in whitespace     -> keep ours, 0.99
    content     both sides add identical text       -> keep one, 0.90
    placement   both sides add different text       -> ours + theirs, 0.85
    logic       anything else                       -> escalate, 0.0

A file is auto-resolvable only if every block is; its type is the most
severe block type and its confidence the weakest block confidence.
"""

import logging
import sqlite3
from dataclasses import dataclass
from pathlib import Path

from mergeguard.core.errors import ConflictParseError, MergeGuardError
from mergeguard.core.escalation import EscalationBridge
from mergeguard.core.git import GitClient, SubprocessGitClient
from mergeguard.core.models import (
    ConflictAnalysis,
    ConflictMarker,
    ConflictType,
    HITLContext,
    HITLOption,
    HITLReason,
    ResolutionResult,
)
from mergeguard.core.validation import validate_identifier

logger = logging.getLogger(__name__)

OURS_MARKER = "<<<<<<<"
BASE_MARKER = "|||||||"
DIVIDER_MARKER = "======="
THEIRS_MARKER = ">>>>>>>"

IMPORT_CONFIDENCE = 0.95
FORMATTING_CONFIDENCE = 0.99
CONTENT_CONFIDENCE = 0.90
PLACEMENT_CONFIDENCE = 0.85

DEFAULT_THRESHOLD = 0.8

# A side containing this is removing code, not adding it
REMOVAL_MARKER = "TODO: remove"

ESCALATION_OPTIONS = [
    HITLOption(id="ours", label="Keep our changes", description="Use changes from current branch"),
    HITLOption(
        id="theirs", label="Keep their changes", description="Use changes from incoming branch"
    ),
    HITLOption(
        id="manual",
        label="Resolve manually",
        description="I will resolve these conflicts myself",
    ),
]


# --- Parsing ---


def _marker_label(line: str, marker: str) -> str | None:
    """Label after marker if line is that marker line, else None."""
    stripped = line.rstrip("\r")
    if stripped == marker:
        return ""
    if stripped.startswith(marker + " "):
        return stripped[len(marker) + 1 :]
    return None


def extract_conflict_markers(content: str) -> list[ConflictMarker]:
    """Parse conflict blocks, including diff3-style ancestor sections.

    Raises:
        ConflictParseError: On nested, unterminated or out-of-order markers.
    """
    conflicts: list[ConflictMarker] = []
    lines = content.split("\n")

    start = -1
    section = ""  # "", "ours", "base", "theirs"
    ours: list[str] = []
    base: list[str] = []
    theirs: list[str] = []
    ours_label = ""
    saw_base = False

    for i, line in enumerate(lines):
        open_label = _marker_label(line, OURS_MARKER)
        if open_label is not None:
            if section:
                raise ConflictParseError("Nested conflict marker", i)
            start, section = i, "ours"
            ours, base, theirs = [], [], []
            ours_label = open_label
            saw_base = False
            continue

        if not section:
            continue

        if _marker_label(line, BASE_MARKER) is not None and section == "ours":
            section, saw_base = "base", True
        elif line.rstrip("\r") == DIVIDER_MARKER and section in ("ours", "base"):
            section = "theirs"
        elif (close_label := _marker_label(line, THEIRS_MARKER)) is not None:
            if section != "theirs":
                raise ConflictParseError("Conflict closed before its ======= divider", i)
            conflicts.append(
                ConflictMarker(
                    start_line=start,
                    end_line=i,
                    ours="".join(part + "\n" for part in ours),
                    theirs="".join(part + "\n" for part in theirs),
                    ancestor="".join(part + "\n" for part in base) if saw_base else None,
                    ours_label=ours_label,
                    theirs_label=close_label,
                )
            )
            section = ""
        elif section == "ours":
            ours.append(line)
        elif section == "base":
            base.append(line)
        else:
            theirs.append(line)

    if section:
        raise ConflictParseError("Unterminated conflict marker", start)
    return conflicts


# --- Heuristics ---


def _is_import_line(line: str) -> bool:
    return (
        line.startswith("import ")
        or line.startswith("from ")
        or line.startswith("} from ")
        or line == "}"
        or line.startswith("//")
        or line.startswith("#")
    )


def is_import_block(content: str) -> bool:
    """True if every non-blank line is an import statement or a comment."""
    lines = [line.strip() for line in content.split("\n") if line.strip()]
    return bool(lines) and all(_is_import_line(line) for line in lines)


def _line_ending(*blocks: str) -> str:
    """Line terminator of the first block that has one; CRLF or LF."""
    for block in blocks:
        if "\n" in block:
            return "\r\n" if "\r\n" in block else "\n"
    return "\n"


def _split_lines(content: str) -> list[str]:
    return [line.removesuffix("\r") for line in content.split("\n")]


def merge_imports(ours: str, theirs: str) -> str:
    """Union of import lines, ours first, duplicates (by trimmed text) dropped.

    The merged block keeps the line ending used by ours (theirs if ours has
    none), so CRLF files stay CRLF.
    """
    eol = _line_ending(ours, theirs)
    seen: set[str] = set()
    merged: list[str] = []
    for line in _split_lines(ours) + _split_lines(theirs):
        key = line.strip()
        if not key or key in seen:
            continue
        seen.add(key)
        merged.append(line.rstrip(" \t"))
    return "".join(line + eol for line in merged)


def is_addition(content: str) -> bool:
    """Heuristic: non-empty text that does not announce a removal."""
    trimmed = content.strip()
    return bool(trimmed) and REMOVAL_MARKER not in trimmed


def normalize(content: str) -> str:
    """Trim every line and drop blank ones."""
    return "\n".join(line.strip() for line in content.split("\n") if line.strip())


def _trim_blank_edges(content: str) -> list[str]:
    lines = _split_lines(content)
    while lines and not lines[0].strip():
        lines.pop(0)
    while lines and not lines[-1].strip():
        lines.pop()
    return lines


def concatenate_additions(ours: str, theirs: str) -> str:
    """Both additions, ours first, separated by one blank line."""
    eol = _line_ending(ours, theirs)
    lines = [*_trim_blank_edges(ours), "", *_trim_blank_edges(theirs)]
    return "".join(line + eol for line in lines)


@dataclass(frozen=True)
class MarkerClassification:
    """How one conflict block would be resolved."""

    conflict_type: ConflictType
    confidence: float
    resolution: str | None
    reason: str

    @property
    def resolvable(self) -> bool:
        return self.resolution is not None


def classify_marker(marker: ConflictMarker) -> MarkerClassification:
    """Apply the rules in order; the first match wins."""
    ours, theirs = marker.ours, marker.theirs

    if is_import_block(ours) and is_import_block(theirs):
        return MarkerClassification(
            ConflictType.IMPORT,
            IMPORT_CONFIDENCE,
            merge_imports(ours, theirs),
            "Import blocks can be merged",
        )

    if normalize(ours) == normalize(theirs):
        return MarkerClassification(
            ConflictType.FORMATTING,
            FORMATTING_CONFIDENCE,
            ours,
            "Only formatting differences",
        )

    both_added = is_addition(ours) and is_addition(theirs)
    if both_added and ours.strip() == theirs.strip():
        return MarkerClassification(
            ConflictType.CONTENT,
            CONTENT_CONFIDENCE,
            ours,
            "Same content added in both branches",
        )

    if both_added:
        return MarkerClassification(
            ConflictType.PLACEMENT,
            PLACEMENT_CONFIDENCE,
            concatenate_additions(ours, theirs),
            "Both branches add new code",
        )

    return MarkerClassification(
        ConflictType.LOGIC, 0.0, None, "Conflicting changes to same code section"
    )


def apply_resolutions(
    content: str, conflicts: list[ConflictMarker], resolutions: list[str]
) -> str:
    """Replace each marker span with its resolution, keeping other lines intact."""
    lines = content.split("\n")
    result: list[str] = []
    last_end = 0

    for conflict, resolution in zip(conflicts, resolutions, strict=True):
        result.extend(lines[last_end : conflict.start_line])
        body = resolution[:-1] if resolution.endswith("\n") else resolution
        if resolution:
            result.extend(body.split("\n"))
        last_end = conflict.end_line + 1

    result.extend(lines[last_end:])
    return "\n".join(result)


def analyze_content(file: str, content: str) -> ConflictAnalysis:
    """Classify the conflicts in one file's text."""
    try:
        conflicts = extract_conflict_markers(content)
    except ConflictParseError as e:
        return ConflictAnalysis(
            file=file,
            conflict_type=ConflictType.LOGIC,
            auto_resolvable=False,
            confidence=0.0,
            reason=f"Malformed conflict markers: {e}",
        )

    if not conflicts:
        return ConflictAnalysis(
            file=file,
            conflict_type=ConflictType.FORMATTING,
            auto_resolvable=True,
            confidence=1.0,
            suggested_resolution=content,
            reason="No conflict markers found",
        )

    classifications = [classify_marker(c) for c in conflicts]
    worst = max(classifications, key=lambda c: c.conflict_type.severity)

    match worst.conflict_type:
        case ConflictType.LOGIC:
            return ConflictAnalysis(
                file=file,
                conflicts=conflicts,
                conflict_type=ConflictType.LOGIC,
                auto_resolvable=False,
                confidence=0.0,
                reason=worst.reason,
            )
        case (
            ConflictType.IMPORT
            | ConflictType.FORMATTING
            | ConflictType.CONTENT
            | ConflictType.PLACEMENT
        ):
            resolutions = [c.resolution for c in classifications if c.resolution is not None]
            return ConflictAnalysis(
                file=file,
                conflicts=conflicts,
                conflict_type=worst.conflict_type,
                auto_resolvable=True,
                confidence=min(c.confidence for c in classifications),
                suggested_resolution=apply_resolutions(content, conflicts, resolutions),
                reason=worst.reason,
            )
        case _:
            raise AssertionError(f"Unhandled conflict type: {worst.conflict_type}")


def format_conflict_analysis(analysis: ConflictAnalysis) -> str:
    """Multi-line summary for terminal display."""
    icon = "O" if analysis.auto_resolvable else "X"
    status = (
        f"Auto-resolvable ({analysis.confidence * 100:.0f}%)"
        if analysis.auto_resolvable
        else "Needs manual resolution"
    )
    lines = [
        f"{icon} {analysis.file}",
        f"   Type: {analysis.conflict_type.value}",
        f"   Status: {status}",
        f"   Reason: {analysis.reason}",
    ]
    if analysis.conflicts:
        lines.append(f"   Conflicts: {len(analysis.conflicts)}")
    return "\n".join(lines)


# --- Resolver ---


class ConflictResolver:
    """Resolves the conflicted files of one working directory.

    USAGE:
        resolver = ConflictResolver(repo_path, bridge=bridge)
        result = resolver.resolve_conflicts()
        # result.resolved were written and staged; result.escalated are
        # covered by the single HITL request result.hitl_request_id
    """

    def __init__(
        self,
        repo_path: Path,
        git: GitClient | None = None,
        bridge: EscalationBridge | None = None,
        threshold: float = DEFAULT_THRESHOLD,
        worktree_id: str | None = None,
    ):
        self.repo_path = Path(repo_path).absolute()
        self.git = git or SubprocessGitClient(self.repo_path)
        self.bridge = bridge
        self.threshold = threshold
        # Validated before any file is written
        if worktree_id is not None:
            validate_identifier(worktree_id, "worktree_id")
        self.worktree_id = worktree_id

    def conflicted_files(self) -> list[str]:
        """Files git reports as unmerged.

        Raises:
            GitError: If git cannot list them.
        """
        return self.git.conflicted_files()

    def _full_path(self, file: str) -> Path | None:
        """Absolute path inside the repository, or None if file escapes it."""
        candidate = (self.repo_path / file).resolve()
        try:
            candidate.relative_to(self.repo_path.resolve())
        except ValueError:
            return None
        return candidate

    def _not_resolvable(self, file: str, reason: str) -> ConflictAnalysis:
        return ConflictAnalysis(
            file=file,
            conflict_type=ConflictType.LOGIC,
            auto_resolvable=False,
            confidence=0.0,
            reason=reason,
        )

    def analyze(self, file: str) -> ConflictAnalysis:
        """Classify one conflicted file relative to the repository root."""
        full_path = self._full_path(file)
        if full_path is None:
            analysis = self._not_resolvable(file, "Path escapes repository")
        elif (self.repo_path / file).is_symlink():
            analysis = self._not_resolvable(file, "Refusing to resolve through a symlink")
        elif not full_path.is_file():
            analysis = self._not_resolvable(file, "File not found")
        else:
            try:
                # newline="" keeps CRLF files byte-for-byte intact
                with open(full_path, encoding="utf-8", newline="") as f:
                    content = f.read()
            except UnicodeDecodeError:
                analysis = self._not_resolvable(file, "Binary or non UTF-8 file")
            except OSError as e:
                analysis = self._not_resolvable(file, f"Cannot read file: {e}")
            else:
                analysis = analyze_content(file, content)

        logger.info(
            f"Analyzed conflict in {file}: {len(analysis.conflicts)} block(s), "
            f"type={analysis.conflict_type.value}, auto_resolvable={analysis.auto_resolvable}, "
            f"confidence={analysis.confidence:.2f}"
        )
        return analysis

    def apply_resolution(self, file: str, resolution: str) -> None:
        """Write the resolved text and stage it.

        Raises:
            OSError: If the file cannot be written.
            GitError: If staging fails.
        """
        full_path = self._full_path(file)
        if full_path is None:
            raise OSError(f"Path escapes repository: {file}")
        with open(full_path, "w", encoding="utf-8", newline="") as f:
            f.write(resolution)
        self.git.stage(file)
        logger.info(f"Applied resolution to {file}")

    def resolve_conflicts(self, files: list[str] | None = None) -> ResolutionResult:
        """Auto-resolve what is safe, escalate the rest in one HITL request.

        A write or stage failure on one file escalates that file and the
        batch continues. If the escalation request cannot be persisted the
        result is still returned, with hitl_request_id left as None.
        """
        targets = list(files) if files is not None else self.conflicted_files()
        if not targets:
            logger.info("No conflicts to resolve")
            return ResolutionResult()

        logger.info(f"Resolving conflicts in {len(targets)} file(s)")
        resolved: list[str] = []
        escalated: list[str] = []

        for file in dict.fromkeys(targets):
            analysis = self.analyze(file)
            if (
                analysis.auto_resolvable
                and analysis.confidence > self.threshold
                and analysis.suggested_resolution is not None
            ):
                try:
                    self.apply_resolution(file, analysis.suggested_resolution)
                except (OSError, MergeGuardError) as e:
                    logger.warning(f"Failed to apply resolution to {file}: {e}")
                    escalated.append(file)
                    continue
                resolved.append(file)
                logger.info(
                    f"Auto-resolved {file} ({analysis.conflict_type.value}, "
                    f"confidence {analysis.confidence:.2f})"
                )
            else:
                escalated.append(file)
                logger.info(
                    f"Escalating {file} ({analysis.conflict_type.value}): {analysis.reason}"
                )

        result = ResolutionResult(resolved=resolved, escalated=escalated)
        if escalated:
            try:
                result.hitl_request_id = self._escalate(escalated)
            except (MergeGuardError, sqlite3.Error) as e:
                logger.error(f"Could not create HITL request for {len(escalated)} file(s): {e}")
        return result

    def _escalate(self, files: list[str]) -> str | None:
        if self.bridge is None:
            logger.warning(
                f"{len(files)} conflicted file(s) need a human "
                "but no escalation bridge is configured"
            )
            return None

        listing = "\n".join(files)
        request = self.bridge.request_human_decision(
            reason=HITLReason.MERGE_CONFLICT,
            title=f"Merge conflicts require review: {len(files)} file(s)",
            description=(
                f"{len(files)} file(s) have conflicts that cannot be auto-resolved:\n{listing}"
            ),
            context=HITLContext(files=files, options=list(ESCALATION_OPTIONS)),
            worktree_id=self.worktree_id,
        )
        logger.info(f"Created HITL request {request.id} for {len(files)} escalated file(s)")
        return request.id

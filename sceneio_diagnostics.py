"""
sceneio Diagnostics
Diagnostic sink, error taxonomy and the result type handed back by an import.

Recoverable problems are recorded as warnings and parsing continues. Only a
structural end of input inside a nested section is fatal; it raises
SceneImportError which the importer turns into a failed ImportResult.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class Severity(Enum):
    INFO = 'INFO'
    WARNING = 'WARNING'
    FATAL = 'FATAL'


class ErrorKind(Enum):
    MALFORMED_FIELD = 'malformed-field'
    OUT_OF_RANGE_INDEX = 'out-of-range-index'
    UNKNOWN_ENUM = 'unknown-enum'
    STRUCTURAL_EOF = 'structural-eof'
    UNRESOLVED_REFERENCE = 'unresolved-reference'
    INFO = 'info'


@dataclass
class Diagnostic:
    severity: Severity
    kind: ErrorKind
    line: Optional[int]
    message: str

    def __str__(self) -> str:
        if self.line is None:
            return f"{self.severity.value}: {self.message}"
        return f"{self.severity.value}: Line {self.line}: {self.message}"


class SceneImportError(ValueError):
    """Unrecoverable import failure, carrying the source line when known"""

    def __init__(self, message: str, line: Optional[int] = None,
                 kind: ErrorKind = ErrorKind.STRUCTURAL_EOF):
        self.message = message
        self.line = line
        self.kind = kind
        if line is None:
            super().__init__(message)
        else:
            super().__init__(f"Line {line}: {message}")


class DiagnosticSink:
    """Collects diagnostics for one import call and optionally echoes them"""

    def __init__(self, verbose: bool = True):
        self.verbose = verbose
        self.records: List[Diagnostic] = []

    def _record(self, diagnostic: Diagnostic) -> None:
        self.records.append(diagnostic)
        if self.verbose:
            print(diagnostic)

    def warn(self, line: Optional[int], message: str,
             kind: ErrorKind = ErrorKind.MALFORMED_FIELD) -> None:
        self._record(Diagnostic(Severity.WARNING, kind, line, message))

    def info(self, line: Optional[int], message: str) -> None:
        self._record(Diagnostic(Severity.INFO, ErrorKind.INFO, line, message))

    def fatal(self, line: Optional[int], message: str,
              kind: ErrorKind = ErrorKind.STRUCTURAL_EOF) -> None:
        self._record(Diagnostic(Severity.FATAL, kind, line, message))
        raise SceneImportError(message, line, kind)

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.records if d.severity == Severity.WARNING]

    def count(self, kind: ErrorKind) -> int:
        return sum(1 for d in self.records if d.kind == kind and d.severity == Severity.WARNING)


@dataclass
class ImportResult:
    """Outcome of one import: a complete scene, or the first fatal error"""
    scene: Optional[object] = None
    diagnostics: List[Diagnostic] = field(default_factory=list)
    error: Optional[str] = None
    line: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.scene is not None

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.severity == Severity.WARNING]

"""Ruff AI Fix - fix the issues Ruff reports by asking a language model for
the corrected file.

Runs Ruff over a folder, groups the reported issues by file, sends every
file with issues to an OpenAI-compatible chat completion API and writes the
returned file body back in place.

Usage:
    ruff-ai-fix API_KEY LINTER_PATH ROOT_FOLDER [options]

Arguments:
    API_KEY                 API key for the chat completion endpoint
    LINTER_PATH             Path to the ruff executable (or a name on PATH)
    ROOT_FOLDER             Folder to check and fix

Options:
    --config PATH           Path to configuration file (default: .ruff-ai-fix.yaml)
    --model MODEL           Chat model to use (default: gpt-4o-mini)
    --api-base URL          API base URL (default: https://api.openai.com/v1)
    --max-workers N         Files fixed concurrently (default: 4)
    --timeout N             Timeout in seconds for API calls (default: 120)
    --max-retries N         Extra attempts on transient API failures (default: 0)
    --output-format FORMAT  Ruff output format to parse: json|text (default: json)
    --no-format             Do not run 'ruff format' before checking
    --no-autofix            Do not let Ruff apply its own fixes first
    --diff                  Show a diff for every fixed file
    --verbose               Show detailed output
    --quiet                 Suppress all output except errors
    --json                  Output results in JSON format
    --version               Show version number
    --help                  Show this help message

Configuration:
    Create a .ruff-ai-fix.yaml file in the directory you run from:

    model: gpt-4o-mini
    api_base: https://api.openai.com/v1
    timeout: 120
    max_workers: 4
    max_retries: 0
    retry_backoff: 1.0
    show_diff: false
    linter:
      output_format: json
      format_first: true
      autofix: true
      timeout: 300

    The API key is only ever taken from the command line.

Environment Variables:
    RUFF_AI_FIX_MODEL       Default chat model
    RUFF_AI_FIX_API_BASE    Default API base URL
    RUFF_AI_FIX_MAX_WORKERS Default concurrency cap

Exit Codes:
    0   Run completed (individual files may still have failed)
    1   Ruff could not be run or its output was unusable
    2   Invalid arguments or configuration
    130 Interrupted

Examples:
    ruff-ai-fix sk-... ruff src/
    ruff-ai-fix sk-... /usr/local/bin/ruff . --max-workers 8 --diff
    ruff-ai-fix sk-... ruff . --output-format text --no-autofix
"""
from __future__ import annotations

import argparse
import difflib
import http.client
import json
import os
import re
import shutil
import subprocess
import sys
import threading
import time
import urllib.error
import urllib.request
from abc import ABC
from abc import abstractmethod
from collections.abc import Iterable
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import as_completed
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any
from typing import cast
from typing import TypedDict

import yaml

from ruff_ai_fix import __version__

# Default configuration file names
CONFIG_FILE_NAMES = [
    '.ruff-ai-fix.yaml',
    '.ruff-ai-fix.yml',
    '.ruff-ai-fix.json',
]

DEFAULT_MODEL = 'gpt-4o-mini'
DEFAULT_API_BASE = 'https://api.openai.com/v1'

SYSTEM_PROMPT = (
    'You are an automated bot that fixes Python code issues based on the '
    'provided issue report.'
)

# Ruff exit codes for `ruff check`
RUFF_EXIT_CLEAN = 0
RUFF_EXIT_ISSUES = 1

# Lines Ruff prints around its concise output that are not issues
RUFF_SUMMARY_PREFIXES = (
    'Found ',
    '[*] ',
    'All checks passed!',
    'No fixes available',
    'No errors found',
)

# Rule code used for syntax errors, which Ruff reports without one
SYNTAX_ERROR_CODE = 'syntax-error'

# HTTP statuses worth another attempt
RETRYABLE_STATUSES = frozenset({408, 409, 429, 500, 502, 503, 504})


# =============================================================================
# Errors
# =============================================================================


class AIFixError(Exception):
    """Base class for all ruff-ai-fix errors."""


class LinterInvocationError(AIFixError):
    """Ruff could not be run, failed, or produced unusable output. Fatal."""

    def __init__(self, message: str, exit_code: int | None = None) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class ParseError(AIFixError):
    """A single line or record of linter output could not be parsed."""

    def __init__(self, raw: str, reason: str) -> None:
        super().__init__(f'{reason}: {raw[:200]!r}')
        self.raw = raw
        self.reason = reason


class FileFixError(AIFixError):
    """Base class for errors that only fail a single file."""

    def __init__(self, file_path: str, message: str) -> None:
        super().__init__(message)
        self.file_path = file_path


class FileReadError(FileFixError):
    """The file to fix could not be read."""


class ApiError(FileFixError):
    """The completion API call failed or returned an unusable body."""

    def __init__(
        self,
        file_path: str,
        message: str,
        status: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(file_path, message)
        self.status = status
        self.retryable = retryable


class FileWriteError(FileFixError):
    """The fixed content could not be written back."""


# =============================================================================
# Enums
# =============================================================================


class FixState(Enum):
    """Lifecycle of a single file's fix."""
    PENDING = 'pending'
    REQUESTED = 'requested'
    FIXED = 'fixed'
    FAILED = 'failed'


class OutputFormat(Enum):
    """Ruff output formats we know how to parse."""
    JSON = 'json'
    TEXT = 'text'


# Allowed state transitions; FIXED and FAILED are terminal
STATE_TRANSITIONS: dict[FixState, frozenset[FixState]] = {
    FixState.PENDING: frozenset({FixState.REQUESTED, FixState.FAILED}),
    FixState.REQUESTED: frozenset({FixState.FIXED, FixState.FAILED}),
    FixState.FIXED: frozenset(),
    FixState.FAILED: frozenset(),
}


# =============================================================================
# TypedDict Configuration Schemas
# =============================================================================


class LinterConfigDict(TypedDict, total=False):
    """Configuration for the Ruff invocation."""
    output_format: str
    format_first: bool
    autofix: bool
    timeout: int


class AIFixConfigDict(TypedDict, total=False):
    """Root configuration schema."""
    model: str
    api_base: str
    timeout: int
    max_workers: int
    max_retries: int
    retry_backoff: float
    show_diff: bool
    linter: LinterConfigDict


# =============================================================================
# Output Formatting
# =============================================================================


class Colors:
    """ANSI color codes for terminal output."""
    RESET = '\033[0m'
    BOLD = '\033[1m'
    DIM = '\033[2m'
    RED = '\033[31m'
    GREEN = '\033[32m'
    YELLOW = '\033[33m'
    BLUE = '\033[34m'
    CYAN = '\033[36m'

    @staticmethod
    def disable() -> None:
        """Disable colors for non-TTY output."""
        Colors.RESET = ''
        Colors.BOLD = ''
        Colors.DIM = ''
        Colors.RED = ''
        Colors.GREEN = ''
        Colors.YELLOW = ''
        Colors.BLUE = ''
        Colors.CYAN = ''


class Logger:
    """Structured logger with verbosity levels and JSON output support.

    Safe to call from the fix worker threads: every message is emitted
    under a single lock.
    """

    def __init__(
        self,
        verbose: bool = False,
        quiet: bool = False,
        json_output: bool = False,
    ) -> None:
        self.verbose = verbose
        self.quiet = quiet
        self.json_output = json_output
        self._json_buffer: list[dict[str, Any]] = []
        self._lock = threading.Lock()

    def _print(self, message: str, force: bool = False) -> None:
        """Print message unless quiet mode is enabled."""
        if not self.quiet or force:
            with self._lock:
                print(message)

    def _record(self, entry: dict[str, Any]) -> None:
        with self._lock:
            self._json_buffer.append(entry)

    def info(self, message: str) -> None:
        """Print info message."""
        if self.json_output:
            self._record({'level': 'info', 'message': message})
        else:
            self._print(f'{Colors.BLUE}ℹ{Colors.RESET} {message}')

    def success(self, message: str) -> None:
        """Print success message."""
        if self.json_output:
            self._record({'level': 'success', 'message': message})
        else:
            self._print(f'{Colors.GREEN}✓{Colors.RESET} {message}')

    def warning(self, message: str) -> None:
        """Print warning message."""
        if self.json_output:
            self._record({'level': 'warning', 'message': message})
        else:
            self._print(f'{Colors.YELLOW}⚠{Colors.RESET} {message}')

    def error(self, message: str) -> None:
        """Print error message."""
        if self.json_output:
            self._record({'level': 'error', 'message': message})
        else:
            self._print(f'{Colors.RED}✗{Colors.RESET} {message}', force=True)

    def debug(self, message: str) -> None:
        """Print debug message (only in verbose mode)."""
        if self.verbose:
            if self.json_output:
                self._record({'level': 'debug', 'message': message})
            else:
                self._print(f'{Colors.DIM}  {message}{Colors.RESET}')

    def header(self, message: str) -> None:
        """Print header message."""
        if self.json_output:
            self._record({'level': 'header', 'message': message})
        else:
            self._print(f'\n{Colors.BOLD}{message}{Colors.RESET}')

    def issue(self, issue: Issue) -> None:
        """Print a lint issue in a formatted way."""
        if self.json_output:
            self._record({'level': 'issue', 'issue': issue.to_dict()})
        else:
            self._print(
                f'  {Colors.YELLOW}{issue.rule_code}{Colors.RESET} '
                f'{Colors.DIM}{issue.location}{Colors.RESET} {issue.message}',
            )

    def diff(self, old: str, new: str, filename: str) -> None:
        """Print a colored diff as one block."""
        if self.json_output:
            self._record({
                'level': 'diff',
                'filename': filename,
                'old': old,
                'new': new,
            })
            return

        lines = [f'\n{Colors.BOLD}--- {filename}{Colors.RESET}']
        diff = difflib.unified_diff(
            old.splitlines(keepends=True),
            new.splitlines(keepends=True),
            fromfile=f'{filename} (original)',
            tofile=f'{filename} (fixed)',
            lineterm='',
        )
        for line in diff:
            if line.startswith('+') and not line.startswith('+++'):
                lines.append(f'{Colors.GREEN}{line.rstrip()}{Colors.RESET}')
            elif line.startswith('-') and not line.startswith('---'):
                lines.append(f'{Colors.RED}{line.rstrip()}{Colors.RESET}')
            elif line.startswith('@@'):
                lines.append(f'{Colors.CYAN}{line.rstrip()}{Colors.RESET}')
            else:
                lines.append(line.rstrip())
        self._print('\n'.join(lines))

    def report(self, report: RunReport) -> None:
        """Record the final run report (JSON mode only)."""
        if self.json_output:
            self._record({'level': 'report', 'report': report.to_dict()})

    def flush_json(self) -> None:
        """Flush JSON buffer to stdout."""
        if self.json_output and self._json_buffer:
            print(json.dumps(self._json_buffer, indent=2))
            self._json_buffer = []


# Global logger instance
logger = Logger()


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class Issue:
    """A single problem reported by the linter."""
    file_path: str
    line: int
    rule_code: str
    message: str
    column: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            'file_path': self.file_path,
            'line': self.line,
            'column': self.column,
            'rule_code': self.rule_code,
            'message': self.message,
        }

    @property
    def location(self) -> str:
        location = f'{self.file_path}:{self.line}'
        if self.column:
            location += f':{self.column}'
        return location

    def render(self) -> str:
        """Human readable form used in prompts."""
        return f'- [{self.rule_code}] line {self.line}: {self.message}'


# Ordered, read-only mapping of file path to the issues reported for it
FileIssueGroup = Mapping[str, tuple[Issue, ...]]


@dataclass(frozen=True)
class FixRequest:
    """Everything the model needs to fix one file."""
    file_path: str
    original_contents: str
    issues: tuple[Issue, ...]


@dataclass(frozen=True)
class FixResponse:
    """Replacement body proposed by the model for one file."""
    file_path: str
    new_contents: str


@dataclass
class FileFixOutcome:
    """Progress of one file through pending -> requested -> fixed | failed."""
    file_path: str
    state: FixState = FixState.PENDING
    error_kind: str = ''
    reason: str = ''
    issue_count: int = 0

    def transition(self, new_state: FixState) -> None:
        """Move to ``new_state``, rejecting transitions the lifecycle forbids."""
        if new_state not in STATE_TRANSITIONS[self.state]:
            raise ValueError(
                f'{self.file_path}: invalid transition '
                f'{self.state.value} -> {new_state.value}',
            )
        self.state = new_state

    def fail(self, error: Exception) -> None:
        self.transition(FixState.FAILED)
        self.error_kind = type(error).__name__
        self.reason = str(error)

    @property
    def is_terminal(self) -> bool:
        return not STATE_TRANSITIONS[self.state]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        data: dict[str, Any] = {
            'file_path': self.file_path,
            'state': self.state.value,
            'issues': self.issue_count,
        }
        if self.state == FixState.FAILED:
            data['error'] = self.error_kind
            data['reason'] = self.reason
        return data


@dataclass
class RunReport:
    """Outcome of a complete run."""
    outcomes: list[FileFixOutcome] = field(default_factory=list)
    total_issues: int = 0

    @property
    def fixed(self) -> list[FileFixOutcome]:
        return [o for o in self.outcomes if o.state == FixState.FIXED]

    @property
    def failed(self) -> list[FileFixOutcome]:
        return [o for o in self.outcomes if o.state == FixState.FAILED]

    def state_of(self, file_path: str) -> FixState | None:
        for outcome in self.outcomes:
            if outcome.file_path == file_path:
                return outcome.state
        return None

    def summary(self) -> str:
        """Get a summary string."""
        return (
            f'{len(self.outcomes)} file(s) with {self.total_issues} issue(s): '
            f'{len(self.fixed)} fixed, {len(self.failed)} failed'
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            'total_files': len(self.outcomes),
            'total_issues': self.total_issues,
            'fixed': [o.to_dict() for o in self.fixed],
            'failed': [o.to_dict() for o in self.failed],
        }


# =============================================================================
# Configuration
# =============================================================================


@dataclass
class LinterRuntimeConfig:
    """Runtime configuration for the Ruff invocation."""
    output_format: OutputFormat = OutputFormat.JSON
    format_first: bool = True
    autofix: bool = True
    timeout: int = 300

    @classmethod
    def from_dict(cls, data: LinterConfigDict) -> LinterRuntimeConfig:
        """Create from dictionary."""
        return cls(
            output_format=OutputFormat(data.get('output_format', 'json')),
            format_first=data.get('format_first', True),
            autofix=data.get('autofix', True),
            timeout=data.get('timeout', 300),
        )


@dataclass
class AIFixConfig:
    """Complete runtime configuration."""
    model: str = DEFAULT_MODEL
    api_base: str = DEFAULT_API_BASE
    timeout: int = 120
    max_workers: int = 4
    max_retries: int = 0
    retry_backoff: float = 1.0
    show_diff: bool = False
    linter: LinterRuntimeConfig = field(default_factory=LinterRuntimeConfig)

    @classmethod
    def from_dict(cls, data: AIFixConfigDict) -> AIFixConfig:
        """Create from dictionary with defaults."""
        max_workers = int(data.get('max_workers', 4))
        if max_workers < 1:
            raise ValueError(f'max_workers must be at least 1, got {max_workers}')
        max_retries = int(data.get('max_retries', 0))
        if max_retries < 0:
            raise ValueError(f'max_retries must not be negative, got {max_retries}')
        linter = data.get('linter') or {}
        if not isinstance(linter, dict):
            raise ValueError(f"'linter' must be a mapping, got {type(linter).__name__}")

        return cls(
            model=data.get('model', DEFAULT_MODEL),
            api_base=data.get('api_base', DEFAULT_API_BASE).rstrip('/'),
            timeout=int(data.get('timeout', 120)),
            max_workers=max_workers,
            max_retries=max_retries,
            retry_backoff=float(data.get('retry_backoff', 1.0)),
            show_diff=data.get('show_diff', False),
            linter=LinterRuntimeConfig.from_dict(linter),
        )


def load_config_file(config_path: Path | None = None) -> AIFixConfigDict:
    """Load configuration from file."""
    if config_path:
        if not config_path.exists():
            raise FileNotFoundError(f'Config file not found: {config_path}')
        paths = [config_path]
    else:
        paths = [Path(name) for name in CONFIG_FILE_NAMES]

    for path in paths:
        if path.exists():
            logger.debug(f'Loading config from {path}')
            with open(path, encoding='utf-8') as f:
                if path.suffix in ('.yaml', '.yml'):
                    data = yaml.safe_load(f) or {}
                else:
                    data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError(f'{path}: expected a mapping at the top level')
            return cast(AIFixConfigDict, data)

    return {}


def load_env_config() -> AIFixConfigDict:
    """Load configuration from environment variables."""
    config: AIFixConfigDict = {}

    if os.environ.get('RUFF_AI_FIX_MODEL'):
        config['model'] = os.environ['RUFF_AI_FIX_MODEL']
    if os.environ.get('RUFF_AI_FIX_API_BASE'):
        config['api_base'] = os.environ['RUFF_AI_FIX_API_BASE']
    if os.environ.get('RUFF_AI_FIX_MAX_WORKERS'):
        config['max_workers'] = int(os.environ['RUFF_AI_FIX_MAX_WORKERS'])

    return config


def merge_config(*layers: AIFixConfigDict) -> AIFixConfigDict:
    """Merge config layers, later layers win. ``linter`` is merged key by key."""
    merged: dict[str, Any] = {}
    for layer in layers:
        for key, value in layer.items():
            if key == 'linter':
                if value is None:
                    continue
                if not isinstance(value, dict):
                    raise ValueError(
                        f"'linter' must be a mapping, got {type(value).__name__}",
                    )
                merged['linter'] = {**merged.get('linter', {}), **value}
            else:
                merged[key] = value
    return cast(AIFixConfigDict, merged)


def is_binary_available(binary_path: str) -> bool:
    """Check if a binary is available at the given path or on PATH."""
    if os.sep in binary_path or (os.altsep and os.altsep in binary_path):
        return os.path.isfile(binary_path) and os.access(binary_path, os.X_OK)
    return shutil.which(binary_path) is not None


# =============================================================================
# Linter Parsers
# =============================================================================


class LinterParser(ABC):
    """Base class for linter output parsers.

    ``parse`` yields one item per record: either an ``Issue`` or the
    ``ParseError`` explaining why that record was skipped. Problems with the
    output as a whole raise ``LinterInvocationError``.
    """

    output_format: OutputFormat

    @abstractmethod
    def parse(self, output: str) -> Iterable[Issue | ParseError]:
        """Parse linter output into issues."""

    @abstractmethod
    def cli_format(self) -> str:
        """Value passed to ``--output-format``."""


class RuffJsonParser(LinterParser):
    """Parser for ``ruff check --output-format json``."""

    output_format = OutputFormat.JSON

    def cli_format(self) -> str:
        return 'json'

    def parse(self, output: str) -> Iterable[Issue | ParseError]:
        """Parse Ruff JSON output."""
        if not output.strip():
            return []

        try:
            data = json.loads(output)
        except json.JSONDecodeError as e:
            raise LinterInvocationError(
                f'Ruff did not produce valid JSON output: {e}',
            ) from e
        if not isinstance(data, list):
            raise LinterInvocationError(
                f'Expected a JSON list from Ruff, got {type(data).__name__}',
            )

        return [self._parse_item(item) for item in data]

    def _parse_item(self, item: Any) -> Issue | ParseError:
        raw = json.dumps(item)
        if not isinstance(item, dict):
            return ParseError(raw, 'record is not an object')

        location = item.get('location') or {}
        filename = item.get('filename')
        code = item.get('code')
        message = item.get('message')
        row = location.get('row') if isinstance(location, dict) else None

        if not filename or not message or not isinstance(row, int):
            return ParseError(raw, 'record is missing filename, message or location')

        column = location.get('column')
        return Issue(
            file_path=filename,
            line=row,
            rule_code=code or SYNTAX_ERROR_CODE,
            message=message,
            column=column if isinstance(column, int) else None,
        )


class RuffTextParser(LinterParser):
    """Parser for line oriented output.

    Accepts both ``path:line:CODE:message`` and Ruff's concise format
    ``path:line:col: CODE [*] message``. Concise syntax errors
    (``path:line:col: SyntaxError: message``) get ``SYNTAX_ERROR_CODE``,
    as in JSON mode.
    """

    output_format = OutputFormat.TEXT

    LINE_PATTERN = re.compile(
        r'^(?P<path>.+?):(?P<line>\d+):(?:(?P<column>\d+):)?\s*'
        r'(?:(?P<code>[A-Z]+[0-9]+)|(?P<syntax>SyntaxError))'
        r'(?:\s*\[\*\])?[:\s]\s*(?P<message>\S.*)$',
    )

    def cli_format(self) -> str:
        return 'concise'

    def parse(self, output: str) -> Iterable[Issue | ParseError]:
        """Parse one issue per line."""
        results: list[Issue | ParseError] = []
        for raw_line in output.splitlines():
            line = raw_line.strip()
            if not line or line.startswith(RUFF_SUMMARY_PREFIXES):
                continue

            match = self.LINE_PATTERN.match(line)
            if not match:
                results.append(ParseError(line, 'unrecognised issue line'))
                continue

            column = match.group('column')
            results.append(Issue(
                file_path=match.group('path'),
                line=int(match.group('line')),
                rule_code=match.group('code') or SYNTAX_ERROR_CODE,
                message=match.group('message').strip(),
                column=int(column) if column else None,
            ))
        return results


LINTER_PARSERS: dict[OutputFormat, type[LinterParser]] = {
    OutputFormat.JSON: RuffJsonParser,
    OutputFormat.TEXT: RuffTextParser,
}


# =============================================================================
# Issue Collector
# =============================================================================


def group_issues_by_file(issues: Iterable[Issue]) -> FileIssueGroup:
    """Group issues by file, keeping first-seen file order and report order."""
    grouped: dict[str, list[Issue]] = {}
    for issue in issues:
        grouped.setdefault(issue.file_path, []).append(issue)
    return MappingProxyType({path: tuple(items) for path, items in grouped.items()})


def parse_linter_output(output: str, output_format: OutputFormat) -> FileIssueGroup:
    """Parse linter output, skipping bad records with one warning each."""
    parser = LINTER_PARSERS[output_format]()
    issues: list[Issue] = []
    for item in parser.parse(output):
        if isinstance(item, ParseError):
            logger.warning(f'Skipping unparseable linter output: {item}')
            continue
        issues.append(item)
    return group_issues_by_file(issues)


def _run_ruff(cmd: list[str], timeout: int) -> subprocess.CompletedProcess[str]:
    logger.debug(f'Running: {" ".join(cmd)}')
    try:
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise LinterInvocationError(f'{cmd[0]} timed out after {timeout}s') from e
    except OSError as e:
        raise LinterInvocationError(f'Failed to run {cmd[0]}: {e}') from e


def run_ruff_format(linter_path: str, root_folder: Path, config: LinterRuntimeConfig) -> None:
    """Run ``ruff format`` over the folder."""
    result = _run_ruff([linter_path, 'format', str(root_folder)], config.timeout)
    if result.returncode != 0:
        raise LinterInvocationError(
            f'Ruff format failed with exit code {result.returncode}: '
            f'{(result.stderr or result.stdout).strip()[:500]}',
            exit_code=result.returncode,
        )


def run_ruff_check(linter_path: str, root_folder: Path, config: LinterRuntimeConfig) -> str:
    """Run ``ruff check`` and return its stdout; empty when nothing is left."""
    parser = LINTER_PARSERS[config.output_format]()
    cmd = [linter_path, 'check']
    if config.autofix:
        cmd.append('--fix')
    cmd.extend(['--output-format', parser.cli_format(), str(root_folder)])

    result = _run_ruff(cmd, config.timeout)
    if result.returncode == RUFF_EXIT_CLEAN:
        return ''
    if result.returncode == RUFF_EXIT_ISSUES:
        return result.stdout
    raise LinterInvocationError(
        f'Ruff check failed with exit code {result.returncode}: '
        f'{(result.stderr or result.stdout).strip()[:500]}',
        exit_code=result.returncode,
    )


def collect_issues(
    linter_path: str,
    root_folder: Path,
    config: LinterRuntimeConfig,
) -> FileIssueGroup:
    """Run the linter over ``root_folder`` and group what it reports by file."""
    if not is_binary_available(linter_path):
        raise LinterInvocationError(f'Linter not found: {linter_path}')

    if config.format_first:
        logger.info(f'Formatting code in {root_folder}...')
        run_ruff_format(linter_path, root_folder, config)

    logger.info(f'Running Ruff check on {root_folder}...')
    output = run_ruff_check(linter_path, root_folder, config)
    return parse_linter_output(output, config.output_format)


# =============================================================================
# Fix Requester
# =============================================================================


def read_file(file_path: str) -> str:
    """Read a file, keeping its newlines untouched."""
    try:
        with open(file_path, encoding='utf-8', newline='') as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise FileReadError(file_path, f'Cannot read {file_path}: {e}') from e


def build_fix_request(file_path: str, issues: Iterable[Issue]) -> FixRequest:
    """Read the file and bundle it with its issues."""
    return FixRequest(
        file_path=file_path,
        original_contents=read_file(file_path),
        issues=tuple(issues),
    )


def build_prompt(request: FixRequest) -> str:
    """Build the prompt for one file."""
    source_lines = request.original_contents.splitlines()
    rendered: list[str] = []
    for issue in request.issues:
        rendered.append(issue.render())
        if 0 < issue.line <= len(source_lines):
            rendered.append(f'  Problematic line: {source_lines[issue.line - 1].strip()}')

    issue_list = '\n'.join(rendered)
    return f"""Fix the following issues in the Python file {request.file_path}.

Issues:
{issue_list}

Here's the current content of the file:

{request.original_contents}

Please provide only the entire fixed content of the file addressing all the issues listed above, do not provide any explanation, do not wrap the response with backticks."""


FENCE_PATTERN = re.compile(r'^\s*```[\w+-]*\n(?P<body>.*?)\n?```\s*$', re.DOTALL)


def clean_completion(content: str, original: str) -> str:
    """Strip a fence wrapping the whole reply and keep the original's final newline."""
    match = FENCE_PATTERN.match(content)
    if match:
        content = match.group('body')
    if original.endswith('\n') and not content.endswith('\n'):
        content += '\n'
    return content


class CompletionClient(ABC):
    """A text completion backend."""

    @abstractmethod
    def complete(self, prompt: str, file_path: str) -> str:
        """Return the model's reply to ``prompt``.

        ``file_path`` is only used for error reporting. Raises ``ApiError``.
        """


class OpenAIChatClient(CompletionClient):
    """OpenAI compatible ``/chat/completions`` client built on urllib."""

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        api_base: str = DEFAULT_API_BASE,
        timeout: int = 120,
        max_retries: int = 0,
        retry_backoff: float = 1.0,
    ) -> None:
        self._api_key = api_key
        self.model = model
        self.api_base = api_base.rstrip('/')
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff

    def __repr__(self) -> str:
        return f'OpenAIChatClient(model={self.model!r}, api_base={self.api_base!r})'

    @classmethod
    def from_config(cls, api_key: str, config: AIFixConfig) -> OpenAIChatClient:
        return cls(
            api_key,
            model=config.model,
            api_base=config.api_base,
            timeout=config.timeout,
            max_retries=config.max_retries,
            retry_backoff=config.retry_backoff,
        )

    def complete(self, prompt: str, file_path: str) -> str:
        attempt = 0
        while True:
            try:
                return self._complete_once(prompt, file_path)
            except ApiError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                attempt += 1
                delay = self.retry_backoff * attempt
                logger.debug(
                    f'{file_path}: {e}; retrying in {delay:.1f}s '
                    f'({attempt}/{self.max_retries})',
                )
                time.sleep(delay)

    def _complete_once(self, prompt: str, file_path: str) -> str:
        data = json.dumps({
            'model': self.model,
            'messages': [
                {'role': 'system', 'content': SYSTEM_PROMPT},
                {'role': 'user', 'content': prompt},
            ],
        }).encode('utf-8')

        req = urllib.request.Request(
            f'{self.api_base}/chat/completions',
            data=data,
            headers={
                'Content-Type': 'application/json',
                'Authorization': f'Bearer {self._api_key}',
            },
            method='POST',
        )

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                body = response.read().decode('utf-8')
        except urllib.error.HTTPError as e:
            raise ApiError(
                file_path,
                f'API returned HTTP {e.code}: {e.reason}',
                status=e.code,
                retryable=e.code in RETRYABLE_STATUSES,
            ) from e
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            raise ApiError(file_path, f'API request failed: {e}', retryable=True) from e
        except UnicodeDecodeError as e:
            raise ApiError(file_path, f'API response is not valid UTF-8: {e}') from e

        try:
            result = json.loads(body)
            content = result['choices'][0]['message']['content']
        except (json.JSONDecodeError, KeyError, IndexError, TypeError) as e:
            raise ApiError(file_path, f'Malformed API response: {body[:200]!r}') from e

        if not isinstance(content, str) or not content.strip():
            raise ApiError(file_path, 'API returned an empty response')
        return content


def request_fix(request: FixRequest, client: CompletionClient) -> FixResponse:
    """Ask the model for the corrected file."""
    content = client.complete(build_prompt(request), request.file_path)
    return FixResponse(
        file_path=request.file_path,
        new_contents=clean_completion(content, request.original_contents),
    )


# =============================================================================
# Fix Applier
# =============================================================================


def apply_fix(response: FixResponse, allowed_paths: Iterable[str]) -> None:
    """Overwrite the file with the fixed content. No backup is kept."""
    if response.file_path not in set(allowed_paths):
        raise FileWriteError(
            response.file_path,
            f'Refusing to write {response.file_path}: not part of this run',
        )
    # Encode before opening so a bad reply never truncates the original
    try:
        data = response.new_contents.encode('utf-8')
    except UnicodeEncodeError as e:
        raise FileWriteError(
            response.file_path, f'Cannot encode fix for {response.file_path}: {e}',
        ) from e
    try:
        with open(response.file_path, 'wb') as f:
            f.write(data)
    except OSError as e:
        raise FileWriteError(
            response.file_path, f'Cannot write {response.file_path}: {e}',
        ) from e


# =============================================================================
# Main Runner
# =============================================================================


class AIFixRunner:
    """Collect issues, then fix every affected file concurrently."""

    def __init__(self, config: AIFixConfig, client: CompletionClient) -> None:
        self.config = config
        self.client = client

    def run(self, linter_path: str, root_folder: Path) -> RunReport:
        """Run the whole pipeline. Raises ``LinterInvocationError``."""
        groups = collect_issues(linter_path, root_folder, self.config.linter)
        return self.fix_all(groups)

    def fix_all(self, groups: FileIssueGroup) -> RunReport:
        """Fix every file in ``groups``; one failure never affects another file."""
        report = RunReport(total_issues=sum(len(issues) for issues in groups.values()))
        if not groups:
            logger.success('All good, no issues left to fix')
            return report

        logger.header(f'Found {report.total_issues} issue(s) in {len(groups)} file(s)')

        allowed_paths = frozenset(groups)
        max_workers = min(self.config.max_workers, len(groups))
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {
                executor.submit(self._fix_file, path, issues, allowed_paths): path
                for path, issues in groups.items()
            }
            for future in as_completed(futures):
                path = futures[future]
                try:
                    outcome = future.result()
                except Exception as e:
                    # A bug in one worker still only fails its own file
                    outcome = FileFixOutcome(file_path=path, issue_count=len(groups[path]))
                    outcome.fail(e)
                    logger.error(f'{path}: unexpected {type(e).__name__}: {e}')
                report.outcomes.append(outcome)

        report.outcomes.sort(key=lambda o: o.file_path)
        self._print_summary(report)
        return report

    def _fix_file(
        self,
        file_path: str,
        issues: tuple[Issue, ...],
        allowed_paths: frozenset[str],
    ) -> FileFixOutcome:
        """Take one file from pending to fixed or failed."""
        outcome = FileFixOutcome(file_path=file_path, issue_count=len(issues))
        logger.info(f'Processing {file_path} ({len(issues)} issue(s))')
        for issue in issues:
            logger.issue(issue)

        try:
            request = build_fix_request(file_path, issues)
        except FileReadError as e:
            outcome.fail(e)
            logger.error(f'{file_path}: {e}')
            return outcome

        outcome.transition(FixState.REQUESTED)
        try:
            response = request_fix(request, self.client)
            if self.config.show_diff:
                logger.diff(request.original_contents, response.new_contents, file_path)
            apply_fix(response, allowed_paths)
        except FileFixError as e:
            outcome.fail(e)
            logger.error(f'{file_path}: {e}')
            return outcome

        outcome.transition(FixState.FIXED)
        logger.success(f'Fixed issues in {file_path}')
        return outcome

    def _print_summary(self, report: RunReport) -> None:
        logger.header('Summary')
        for outcome in report.fixed:
            logger.success(f'Fixed: {outcome.file_path}')
        for outcome in report.failed:
            logger.error(f'Failed: {outcome.file_path} ({outcome.error_kind}: {outcome.reason})')
        logger.info(report.summary())
        logger.report(report)


# =============================================================================
# CLI
# =============================================================================


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f'must be at least 1, got {number}')
    return number


def _non_negative_int(value: str) -> int:
    number = int(value)
    if number < 0:
        raise argparse.ArgumentTypeError(f'must not be negative, got {number}')
    return number


def create_argument_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog='ruff-ai-fix',
        description='AI-powered fixer for the issues Ruff reports',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  ruff-ai-fix sk-... ruff src/                     Fix everything under src/
  ruff-ai-fix sk-... ruff . --max-workers 8        Fix up to 8 files at once
  ruff-ai-fix sk-... ruff . --diff                 Show what changed per file
  ruff-ai-fix sk-... ruff . --no-format --no-autofix
                                                   Leave all fixes to the model
        ''',
    )

    parser.add_argument(
        'api_key',
        help='API key for the chat completion endpoint',
    )
    parser.add_argument(
        'linter_path',
        help='Path to the ruff executable',
    )
    parser.add_argument(
        'root_folder',
        type=Path,
        help='Folder to run Ruff check on',
    )
    parser.add_argument(
        '--config', '-c',
        type=Path,
        help='Path to configuration file',
    )
    parser.add_argument(
        '--model',
        help=f'Chat model to use (default: {DEFAULT_MODEL})',
    )
    parser.add_argument(
        '--api-base',
        help=f'API base URL (default: {DEFAULT_API_BASE})',
    )
    parser.add_argument(
        '--max-workers',
        type=_positive_int,
        help='Number of files fixed concurrently (default: 4)',
    )
    parser.add_argument(
        '--timeout',
        type=_positive_int,
        help='Timeout in seconds for API calls (default: 120)',
    )
    parser.add_argument(
        '--max-retries',
        type=_non_negative_int,
        help='Extra attempts on transient API failures (default: 0)',
    )
    parser.add_argument(
        '--output-format',
        choices=[f.value for f in OutputFormat],
        help='Ruff output format to parse (default: json)',
    )
    parser.add_argument(
        '--no-format',
        action='store_true',
        help="Do not run 'ruff format' before checking",
    )
    parser.add_argument(
        '--no-autofix',
        action='store_true',
        help='Do not let Ruff apply its own fixes first',
    )
    parser.add_argument(
        '--diff',
        action='store_true',
        help='Show a diff for every fixed file',
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Show detailed output',
    )
    parser.add_argument(
        '--quiet', '-q',
        action='store_true',
        help='Suppress all output except errors',
    )
    parser.add_argument(
        '--json',
        action='store_true',
        help='Output results in JSON format',
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}',
    )

    return parser


def build_config(args: argparse.Namespace) -> AIFixConfig:
    """Merge file, environment and CLI settings (CLI > env > file)."""
    cli_config: AIFixConfigDict = {}
    if args.model:
        cli_config['model'] = args.model
    if args.api_base:
        cli_config['api_base'] = args.api_base
    if args.max_workers:
        cli_config['max_workers'] = args.max_workers
    if args.timeout:
        cli_config['timeout'] = args.timeout
    if args.max_retries is not None:
        cli_config['max_retries'] = args.max_retries
    if args.diff:
        cli_config['show_diff'] = True

    linter_overrides: LinterConfigDict = {}
    if args.output_format:
        linter_overrides['output_format'] = args.output_format
    if args.no_format:
        linter_overrides['format_first'] = False
    if args.no_autofix:
        linter_overrides['autofix'] = False
    if linter_overrides:
        cli_config['linter'] = linter_overrides

    merged = merge_config(load_config_file(args.config), load_env_config(), cli_config)
    return AIFixConfig.from_dict(merged)


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    global logger

    parser = create_argument_parser()
    args = parser.parse_args(argv)

    # Setup logger
    logger = Logger(
        verbose=args.verbose,
        quiet=args.quiet,
        json_output=args.json,
    )

    # Disable colors if not TTY
    if not sys.stdout.isatty() or args.json:
        Colors.disable()

    if not args.root_folder.is_dir():
        parser.error(f'root folder does not exist or is not a directory: {args.root_folder}')

    try:
        config = build_config(args)
    except (OSError, ValueError, yaml.YAMLError) as e:
        parser.error(f'invalid configuration: {e}')

    client = OpenAIChatClient.from_config(args.api_key, config)
    runner = AIFixRunner(config, client)

    try:
        runner.run(args.linter_path, args.root_folder)
        return 0
    except LinterInvocationError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info('\nInterrupted')
        return 130
    finally:
        logger.flush_json()


if __name__ == '__main__':
    sys.exit(main())

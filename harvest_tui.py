#!/usr/bin/env python3
# harvest_tui: Terminal Harvest timer (pick project, pick task, start/stop)
#
# Hotkeys
#   ↑/↓ k/j   move the highlight in project/task lists
#   /         filter the current list (type to narrow, Enter keep, Esc cancel)
#   Enter     select project/task, or start/stop the timer
#   Esc       go back to the previous screen (or close help)
#   ? F1      toggle help
#   q Ctrl+C  quit (q types text while editing notes or a filter)
#
# Flow
# - Projects and tasks are discovered from your recent time entries.
# - Every network call runs on a worker thread; its result comes back as an
#   event and is applied by the same transition function as a keypress.
#
# Environment
# - HARVEST_ACCOUNT_ID, HARVEST_ACCESS_TOKEN (required)
# - HARVEST_BASE_URL (optional, default https://api.harvestapp.com/v2)
# - HARVEST_TUI_LOG_LEVEL, HARVEST_TUI_LOG_FILE (optional file logging)
# - HARVEST_TUI_THEME (optional preset name: Default, Light, or a YAML file
#   in ~/.harvest_tui/themes)

from __future__ import annotations

import asyncio
import dataclasses
import datetime as dt
import itertools
import os
import sys
import threading
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

import requests
import yaml
from prompt_toolkit import Application
from prompt_toolkit.filters import Condition
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.styles import Style
import logging
from logging.handlers import RotatingFileHandler

__version__ = "1.0.0"

DEFAULT_BASE_URL = "https://api.harvestapp.com/v2"
REQUEST_TIMEOUT = 30
RECENT_ENTRIES_PAGE = 100

logger = logging.getLogger('harvest_tui')


# -----------------------------
# Config
# -----------------------------
class ConfigError(ValueError):
    pass


@dataclass
class Config:
    account_id: str
    access_token: str
    base_url: str = DEFAULT_BASE_URL
    log_level: str = "ERROR"
    log_file: str = "~/.harvest_tui.log"
    theme: str = "Default"


def load_config(environ: Optional[Mapping[str, str]] = None) -> Config:
    """Build the runtime config from environment variables only."""
    env = os.environ if environ is None else environ
    account_id = (env.get("HARVEST_ACCOUNT_ID") or "").strip()
    token = (env.get("HARVEST_ACCESS_TOKEN") or "").strip()
    if not account_id or not token:
        raise ConfigError("HARVEST_ACCOUNT_ID and HARVEST_ACCESS_TOKEN environment variables must be set")
    return Config(
        account_id=account_id,
        access_token=token,
        base_url=(env.get("HARVEST_BASE_URL") or DEFAULT_BASE_URL).rstrip("/"),
        log_level=env.get("HARVEST_TUI_LOG_LEVEL") or "ERROR",
        log_file=env.get("HARVEST_TUI_LOG_FILE") or "~/.harvest_tui.log",
        theme=env.get("HARVEST_TUI_THEME") or "Default",
    )


def setup_logging(log_file: str, log_level: str = 'ERROR') -> logging.Logger:
    path = os.path.expanduser(log_file)
    directory = os.path.dirname(path)
    if directory and not os.path.isdir(directory):
        os.makedirs(directory, exist_ok=True)
    # Always reset handlers so the configured level reliably controls file output.
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    fh = RotatingFileHandler(path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = getattr(logging, str(log_level).upper(), None)
    if not isinstance(lvl, int):
        lvl = logging.ERROR
    fh.setLevel(lvl)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)
    # the full-screen UI owns the terminal; keep records out of stderr
    logger.propagate = False
    return logger


# -----------------------------
# Themes
# -----------------------------
@dataclass
class ThemePreset:
    name: str
    style: Dict[str, str]
    description: Optional[str] = None


BASE_THEME_STYLE: Dict[str, str] = {
    'title': 'bold #fafafa bg:#7d56f4',
    'info': '#888888',
    'error': '#ff0000',
    'success': '#00ff00',
    'footer': '#626262',
    'help': '#d0d0d0',
    'list.title': 'bold',
    'list.item': '#dddddd',
    'list.cursor': 'bold #ee6ff8',
    'list.meta': '#777777',
    'list.filter': '#ffd75f',
    'input': '#ffffff',
    'input.placeholder': '#626262',
}

BUILTIN_THEMES: List[ThemePreset] = [
    ThemePreset(
        name="Light",
        description="Dark text for light terminal backgrounds",
        style={
            'title': 'bold #ffffff bg:#5a3fd1',
            'info': '#5f5f5f',
            'error': 'bold #c00000',
            'success': '#008700',
            'footer': '#8a8a8a',
            'help': '#303030',
            'list.item': '#303030',
            'list.cursor': 'bold #af00af',
            'list.meta': '#8a8a8a',
            'list.filter': '#875f00',
            'input': '#000000',
            'input.placeholder': '#a8a8a8',
        },
    ),
]

THEME_DIR = Path(os.path.expanduser("~/.harvest_tui/themes"))


def load_theme_presets(theme_dir: Path) -> List[ThemePreset]:
    """Default and built-in presets, then user YAML files from theme_dir.

    A file whose name matches a built-in preset replaces it; later files
    repeating a name already loaded are skipped.
    """
    presets: List[ThemePreset] = [ThemePreset(name="Default", style=dict(BASE_THEME_STYLE))]
    for builtin in BUILTIN_THEMES:
        presets.append(ThemePreset(name=builtin.name, style={**BASE_THEME_STYLE, **builtin.style},
                                   description=builtin.description))
    slots = {preset.name.lower(): i for i, preset in enumerate(presets)}
    seen: Set[str] = set()
    if not theme_dir.is_dir():
        return presets
    candidates = sorted(theme_dir.glob("*.yml")) + sorted(theme_dir.glob("*.yaml"))
    for path in candidates:
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError):
            logger.warning("Failed to load theme file %s", path, exc_info=True)
            continue
        if not isinstance(data, dict):
            continue
        name = str(data.get("name") or path.stem).strip() or path.stem
        overrides = data.get("style") if isinstance(data.get("style"), dict) else {}
        style_dict = dict(BASE_THEME_STYLE)
        for key, value in overrides.items():
            if isinstance(key, str) and isinstance(value, str):
                style_dict[key] = value
        preset = ThemePreset(name=name, style=style_dict, description=data.get("description"))
        lowered = name.lower()
        if lowered in seen:
            continue
        seen.add(lowered)
        if lowered in slots:
            presets[slots[lowered]] = preset
        else:
            presets.append(preset)
    return presets


def select_theme(presets: Sequence[ThemePreset], name: Optional[str]) -> ThemePreset:
    wanted = (name or "").strip().lower()
    for preset in presets:
        if preset.name.lower() == wanted:
            return preset
    if wanted and wanted != "default":
        logger.warning("Unknown theme %r; using %s", name, presets[0].name)
    return presets[0]


# -----------------------------
# Domain models
# -----------------------------
@dataclass(frozen=True)
class Project:
    id: int
    name: str


@dataclass(frozen=True)
class Task:
    id: int
    name: str


@dataclass(frozen=True)
class TimerEntry:
    id: int
    notes: str
    elapsed_hours: float
    project_id: int
    task_id: int
    running: bool


# -----------------------------
# Errors
# -----------------------------
class HarvestError(RuntimeError):
    """Base class for failures surfaced to the interaction engine."""


class AuthError(HarvestError):
    pass


class NetworkError(HarvestError):
    pass


class ServiceError(HarvestError):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ValidationError(HarvestError):
    pass


# -----------------------------
# Service interface
# -----------------------------
class TimeTrackingService:
    """Remote time-tracking capability used by the interaction engine.

    Every method is one blocking round trip without retries. Failures raise
    AuthError, NetworkError or ServiceError. List methods return items with
    unique ids, keeping the first-seen name for each id.
    """

    def list_recent_projects(self) -> List[Project]:
        raise NotImplementedError

    def list_recent_tasks(self, project_id: int) -> List[Task]:
        raise NotImplementedError

    def start_timer(self, project_id: int, task_id: int, notes: str) -> TimerEntry:
        raise NotImplementedError

    def stop_timer(self, timer_id: int) -> None:
        raise NotImplementedError


def unique_by_id(records: Iterable[Optional[dict]]) -> List[Tuple[int, str]]:
    """Collapse records to (id, name) pairs in first-seen order."""
    seen: Dict[int, str] = {}
    for rec in records:
        if not isinstance(rec, dict) or rec.get('id') is None:
            continue
        try:
            ident = int(rec['id'])
        except (TypeError, ValueError):
            continue
        if ident not in seen:
            seen[ident] = str(rec.get('name') or '')
    return list(seen.items())


# -----------------------------
# Harvest HTTP client
# -----------------------------
def _session(config: Config) -> requests.Session:
    s = requests.Session()
    s.headers["Harvest-Account-ID"] = config.account_id
    s.headers["Authorization"] = f"Bearer {config.access_token}"
    s.headers["User-Agent"] = f"harvest-tui/{__version__}"
    s.headers["Content-Type"] = "application/json"
    s.headers["Accept"] = "application/json"
    return s


def _error_message(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        msg = data.get('message') or data.get('error_description') or data.get('error')
        if msg:
            return str(msg)
    body = (resp.text or '').strip()
    return body[:200] or f"HTTP {resp.status_code}"


def _int_field(data: dict, flat_key: str, nested_key: str) -> int:
    value = data.get(flat_key)
    if value is None:
        nested = data.get(nested_key)
        if isinstance(nested, dict):
            value = nested.get('id')
    return int(value or 0)


def parse_timer_entry(data: dict) -> TimerEntry:
    try:
        return TimerEntry(
            id=int(data['id']),
            notes=str(data.get('notes') or ''),
            elapsed_hours=float(data.get('hours') or 0.0),
            project_id=_int_field(data, 'project_id', 'project'),
            task_id=_int_field(data, 'task_id', 'task'),
            running=bool(data.get('is_running')),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise ServiceError(f"Unexpected time entry payload: {exc}") from exc


class HarvestClient(TimeTrackingService):
    def __init__(self, config: Config, session: Optional[requests.Session] = None):
        self.config = config
        self.session = session or _session(config)

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.config.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise NetworkError(f"Could not reach Harvest: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            logger.warning("%s %s failed: %s", method, path, exc)
            raise NetworkError(str(exc)) from exc
        if resp.status_code in (401, 403):
            msg = _error_message(resp)
            logger.warning("%s %s HTTP %s: %s", method, path, resp.status_code, msg)
            raise AuthError(f"Harvest rejected the credentials ({resp.status_code}): {msg}")
        if resp.status_code >= 400:
            msg = _error_message(resp)
            logger.warning("%s %s HTTP %s: %s", method, path, resp.status_code, msg)
            raise ServiceError(msg, status=resp.status_code)
        if not (resp.content or b'').strip():
            return {}
        try:
            data = resp.json()
        except ValueError as exc:
            raise ServiceError(f"Harvest returned a non-JSON response ({resp.status_code})", status=resp.status_code) from exc
        return data if isinstance(data, dict) else {}

    def test_connection(self) -> dict:
        """Verify the credentials with a cheap authenticated call."""
        return self._request("GET", "/users/me")

    def _recent_entries(self, params: Dict[str, object]) -> List[dict]:
        data = self._request("GET", "/time_entries", params=params)
        entries = data.get('time_entries') or []
        return [e for e in entries if isinstance(e, dict)]

    def list_recent_projects(self) -> List[Project]:
        entries = self._recent_entries({'per_page': RECENT_ENTRIES_PAGE})
        projects = [Project(id=i, name=n) for i, n in unique_by_id(e.get('project') for e in entries)]
        logger.info("Discovered %d projects from %d recent entries", len(projects), len(entries))
        return projects

    def list_recent_tasks(self, project_id: int) -> List[Task]:
        entries = self._recent_entries({'project_id': project_id, 'per_page': RECENT_ENTRIES_PAGE})
        tasks = [Task(id=i, name=n) for i, n in unique_by_id(e.get('task') for e in entries)]
        logger.info("Discovered %d tasks for project %s", len(tasks), project_id)
        return tasks

    def start_timer(self, project_id: int, task_id: int, notes: str) -> TimerEntry:
        payload = {
            'project_id': project_id,
            'task_id': task_id,
            'notes': notes,
            'spent_date': dt.date.today().isoformat(),
        }
        return parse_timer_entry(self._request("POST", "/time_entries", json=payload))

    def stop_timer(self, timer_id: int) -> None:
        self._request("PATCH", f"/time_entries/{timer_id}/stop")


# -----------------------------
# In-memory service
# -----------------------------
class InMemoryTimeTracking(TimeTrackingService):
    """Service backed by a list of recent entries, recording every call.

    ``entries`` are ``(project, task)`` pairs, newest first, mirroring the
    recent time entries the Harvest client scans.
    """

    def __init__(self, entries: Optional[Iterable[Tuple[Project, Task]]] = None):
        self.entries: List[Tuple[Project, Task]] = list(entries or [])
        self.calls: List[Tuple[str, tuple]] = []
        self.timers: Dict[int, TimerEntry] = {}
        self._failures: Dict[str, HarvestError] = {}
        self._next_id = 1000

    def fail_next(self, operation: str, error: HarvestError) -> None:
        self._failures[operation] = error

    def _record(self, operation: str, *args) -> None:
        self.calls.append((operation, args))
        err = self._failures.pop(operation, None)
        if err is not None:
            raise err

    def running_timer(self) -> Optional[TimerEntry]:
        return next((t for t in self.timers.values() if t.running), None)

    def list_recent_projects(self) -> List[Project]:
        self._record('list_recent_projects')
        pairs = unique_by_id({'id': p.id, 'name': p.name} for p, _ in self.entries)
        return [Project(id=i, name=n) for i, n in pairs]

    def list_recent_tasks(self, project_id: int) -> List[Task]:
        self._record('list_recent_tasks', project_id)
        pairs = unique_by_id({'id': t.id, 'name': t.name} for p, t in self.entries if p.id == project_id)
        return [Task(id=i, name=n) for i, n in pairs]

    def start_timer(self, project_id: int, task_id: int, notes: str) -> TimerEntry:
        self._record('start_timer', project_id, task_id, notes)
        current = self.running_timer()
        if current is not None:
            # the service allows a single running timer per user
            self.timers[current.id] = dataclasses.replace(current, running=False)
        self._next_id += 1
        timer = TimerEntry(id=self._next_id, notes=notes, elapsed_hours=0.0,
                           project_id=project_id, task_id=task_id, running=True)
        self.timers[timer.id] = timer
        return timer

    def stop_timer(self, timer_id: int) -> None:
        self._record('stop_timer', timer_id)
        timer = self.timers.get(timer_id)
        if timer is None:
            raise ServiceError(f"Time entry {timer_id} not found", status=404)
        self.timers[timer_id] = dataclasses.replace(timer, running=False)


# -----------------------------
# Events & operations
# -----------------------------
SELECT = "select"
BACK = "back"
TOGGLE_HELP = "toggle_help"
QUIT = "quit"
INSERT = "insert"
DELETE = "delete"


@dataclass(frozen=True)
class Key:
    action: str
    index: int = -1    # highlighted index into the current list, for SELECT
    text: str = ""     # typed text, for INSERT


@dataclass(frozen=True)
class ProjectsLoaded:
    projects: Tuple[Project, ...]


@dataclass(frozen=True)
class TasksLoaded:
    project_id: int
    tasks: Tuple[Task, ...]


@dataclass(frozen=True)
class TimerStarted:
    timer: TimerEntry


@dataclass(frozen=True)
class TimerStopped:
    timer_id: int


@dataclass(frozen=True)
class OperationFailed:
    operation: str
    message: str
    kind: str = "HarvestError"


Event = Union[Key, ProjectsLoaded, TasksLoaded, TimerStarted, TimerStopped, OperationFailed]

LIST_PROJECTS = "list_recent_projects"
LIST_TASKS = "list_recent_tasks"
START_TIMER = "start_timer"
STOP_TIMER = "stop_timer"


@dataclass(frozen=True)
class Operation:
    """A single service call requested by a transition."""
    name: str
    args: tuple = ()

    def run(self, service: TimeTrackingService) -> Event:
        try:
            if self.name == LIST_PROJECTS:
                return ProjectsLoaded(tuple(service.list_recent_projects()))
            if self.name == LIST_TASKS:
                (project_id,) = self.args
                return TasksLoaded(project_id, tuple(service.list_recent_tasks(project_id)))
            if self.name == START_TIMER:
                return TimerStarted(service.start_timer(*self.args))
            if self.name == STOP_TIMER:
                (timer_id,) = self.args
                service.stop_timer(timer_id)
                return TimerStopped(timer_id)
        except HarvestError as exc:
            return OperationFailed(self.name, str(exc), type(exc).__name__)
        except Exception as exc:
            logger.exception("Operation %s crashed", self.name)
            return OperationFailed(self.name, f"Unexpected error: {exc}", type(exc).__name__)
        raise ValueError(f"Unknown operation: {self.name}")


# -----------------------------
# Interaction states
# -----------------------------
@dataclass(frozen=True)
class LoadingProjects:
    pass


@dataclass(frozen=True)
class SelectingProject:
    projects: Tuple[Project, ...]


@dataclass(frozen=True)
class LoadingTasks:
    project: Project


@dataclass(frozen=True)
class SelectingTask:
    project: Project
    tasks: Tuple[Task, ...]


@dataclass(frozen=True)
class EnteringDetails:
    project: Project
    task: Task
    notes: str = ""
    active_timer: Optional[TimerEntry] = None
    pending: Optional[str] = None   # START_TIMER / STOP_TIMER while in flight
    error: str = ""
    success: str = ""


@dataclass(frozen=True)
class ErrorState:
    message: str


InteractionState = Union[LoadingProjects, SelectingProject, LoadingTasks, SelectingTask, EnteringDetails, ErrorState]

EMPTY_NOTES_MESSAGE = "Please enter ticket number and description"


def validate_notes(notes: str) -> str:
    value = notes.strip()
    if not value:
        raise ValidationError(EMPTY_NOTES_MESSAGE)
    return value


# -----------------------------
# Interaction engine
# -----------------------------
class InteractionEngine:
    """Single owner of the interaction state.

    ``handle`` applies one event and returns the operation to run next, if
    any. Keystrokes and service completions go through the same function.
    """

    def __init__(self) -> None:
        self.state: InteractionState = LoadingProjects()
        self.show_help = False
        self.finished = False
        self.active_timer: Optional[TimerEntry] = None
        self._projects: Tuple[Project, ...] = ()
        self._tasks: Tuple[Task, ...] = ()
        self._in_flight: Set[str] = set()
        # timer outcome that arrived while the details screen was not shown
        self._carried: Dict[str, str] = {}

    @property
    def in_flight(self) -> frozenset:
        return frozenset(self._in_flight)

    def start(self) -> Operation:
        self.state = LoadingProjects()
        return self._issue(Operation(LIST_PROJECTS))

    def handle(self, event: Event) -> Optional[Operation]:
        if self.finished:
            return None
        before = type(self.state).__name__
        if isinstance(event, Key):
            op = self._on_key(event)
        elif isinstance(event, ProjectsLoaded):
            op = self._on_projects(event)
        elif isinstance(event, TasksLoaded):
            op = self._on_tasks(event)
        elif isinstance(event, TimerStarted):
            op = self._on_timer_started(event)
        elif isinstance(event, TimerStopped):
            op = self._on_timer_stopped(event)
        elif isinstance(event, OperationFailed):
            op = self._on_failure(event)
        else:
            raise TypeError(f"Unhandled event: {event!r}")
        logger.debug("%s --%s--> %s", before, type(event).__name__, type(self.state).__name__)
        return self._issue(op) if op is not None else None

    def _issue(self, op: Operation) -> Operation:
        self._in_flight.add(op.name)
        logger.info("Issuing %s%r", op.name, op.args)
        return op

    def _timer_busy(self) -> Optional[str]:
        for name in (START_TIMER, STOP_TIMER):
            if name in self._in_flight:
                return name
        return None

    # keys
    def _on_key(self, key: Key) -> Optional[Operation]:
        if key.action == QUIT:
            self.finished = True
            return None
        if key.action == TOGGLE_HELP:
            self.show_help = not self.show_help
            return None
        if self.show_help:
            if key.action == BACK:
                self.show_help = False
            return None
        state = self.state
        if key.action == BACK:
            if isinstance(state, SelectingTask):
                # the task list belongs to the project being left
                self._tasks = ()
                self.state = SelectingProject(self._projects)
            elif isinstance(state, EnteringDetails):
                self.state = SelectingTask(state.project, self._tasks)
            return None
        if key.action == SELECT:
            if isinstance(state, SelectingProject):
                if 0 <= key.index < len(state.projects):
                    project = state.projects[key.index]
                    self.state = LoadingTasks(project)
                    return Operation(LIST_TASKS, (project.id,))
            elif isinstance(state, SelectingTask):
                if 0 <= key.index < len(state.tasks):
                    self.state = EnteringDetails(
                        state.project, state.tasks[key.index],
                        active_timer=self.active_timer,
                        pending=self._timer_busy(),
                        error=self._carried.pop('error', ''),
                        success=self._carried.pop('success', ''),
                    )
            elif isinstance(state, EnteringDetails):
                return self._confirm(state)
            return None
        if isinstance(state, EnteringDetails) and state.pending is None:
            if key.action == INSERT and key.text:
                self.state = dataclasses.replace(state, notes=state.notes + key.text)
            elif key.action == DELETE and state.notes:
                self.state = dataclasses.replace(state, notes=state.notes[:-1])
        return None

    def _confirm(self, state: EnteringDetails) -> Optional[Operation]:
        if state.pending is not None or self._timer_busy():
            return None
        cleared = dataclasses.replace(state, error="", success="")
        if self.active_timer is not None:
            self.state = dataclasses.replace(cleared, pending=STOP_TIMER)
            return Operation(STOP_TIMER, (self.active_timer.id,))
        try:
            notes = validate_notes(state.notes)
        except ValidationError as exc:
            self.state = dataclasses.replace(cleared, error=str(exc))
            return None
        self.state = dataclasses.replace(cleared, pending=START_TIMER)
        return Operation(START_TIMER, (state.project.id, state.task.id, notes))

    def _report(self, error: str = "", success: str = "") -> None:
        if isinstance(self.state, EnteringDetails):
            self.state = dataclasses.replace(
                self.state, active_timer=self.active_timer, pending=None, error=error, success=success)
        else:
            self._carried = {'error': error, 'success': success}

    # completions
    def _on_projects(self, event: ProjectsLoaded) -> None:
        self._in_flight.discard(LIST_PROJECTS)
        if not isinstance(self.state, LoadingProjects):
            logger.warning("Ignoring projects delivered outside LoadingProjects")
            return None
        self._projects = tuple(event.projects)
        self.state = SelectingProject(self._projects)
        return None

    def _on_tasks(self, event: TasksLoaded) -> None:
        self._in_flight.discard(LIST_TASKS)
        state = self.state
        if not isinstance(state, LoadingTasks) or state.project.id != event.project_id:
            logger.warning("Ignoring stale tasks for project %s", event.project_id)
            return None
        self._tasks = tuple(event.tasks)
        self.state = SelectingTask(state.project, self._tasks)
        return None

    def _on_timer_started(self, event: TimerStarted) -> None:
        self._in_flight.discard(START_TIMER)
        self.active_timer = event.timer
        self._report(success=f"Timer started for: {event.timer.notes}")
        return None

    def _on_timer_stopped(self, event: TimerStopped) -> None:
        self._in_flight.discard(STOP_TIMER)
        if self.active_timer is not None and self.active_timer.id == event.timer_id:
            self.active_timer = None
        self._report(success="Timer stopped")
        return None

    def _on_failure(self, event: OperationFailed) -> None:
        self._in_flight.discard(event.operation)
        logger.warning("%s failed (%s): %s", event.operation, event.kind, event.message)
        if event.operation in (LIST_PROJECTS, LIST_TASKS):
            if isinstance(self.state, (LoadingProjects, LoadingTasks)):
                self.state = ErrorState(event.message)
        else:
            self._report(error=event.message)
        return None


# -----------------------------
# List picker
# -----------------------------
class ListPicker:
    """Cursor and substring filter over a list of named items."""

    def __init__(self, title: str, visible_rows: int = 12):
        self.title = title
        self.visible_rows = max(1, visible_rows)
        self.items: Sequence = ()
        self.filter_text = ""
        self.filtering = False
        self.cursor = 0
        self.offset = 0

    def bind(self, items: Sequence) -> None:
        if items is self.items:
            return
        self.items = items
        self.filter_text = ""
        self.filtering = False
        self.cursor = 0
        self.offset = 0

    def visible(self) -> List[int]:
        needle = self.filter_text.lower()
        return [i for i, item in enumerate(self.items) if needle in item.name.lower()]

    def highlighted(self) -> Optional[int]:
        idx = self.visible()
        if not idx:
            return None
        return idx[min(self.cursor, len(idx) - 1)]

    def move(self, delta: int) -> None:
        count = len(self.visible())
        if not count:
            self.cursor = 0
            return
        self.cursor = max(0, min(count - 1, self.cursor + delta))
        self._scroll_to_cursor()

    def resize(self, visible_rows: int) -> None:
        self.visible_rows = max(1, visible_rows)
        self._scroll_to_cursor()

    def _scroll_to_cursor(self) -> None:
        if self.cursor < self.offset:
            self.offset = self.cursor
        elif self.cursor >= self.offset + self.visible_rows:
            self.offset = self.cursor - self.visible_rows + 1

    def start_filter(self) -> None:
        self.filtering = True

    def type(self, text: str) -> None:
        self.filter_text += text
        self._reset_cursor()

    def backspace(self) -> None:
        if self.filter_text:
            self.filter_text = self.filter_text[:-1]
            self._reset_cursor()

    def accept_filter(self) -> None:
        self.filtering = False

    def cancel_filter(self) -> None:
        self.filtering = False
        self.filter_text = ""
        self._reset_cursor()

    def _reset_cursor(self) -> None:
        self.cursor = 0
        self.offset = 0


# -----------------------------
# Rendering
# -----------------------------
Fragments = List[Tuple[str, str]]

APP_TITLE = "✓ Harvest Timer TUI"
NOTES_PLACEHOLDER = "Ticket-123 - Description of work"

HELP_TEXT = """KEYBOARD SHORTCUTS
  ↑/↓ k/j      Navigate through options
  /            Filter the list (start typing to search)
  Enter        Select project/task or start/stop timer
  Esc          Go back to previous screen
  ? or F1      Show/hide this help (F1 while typing notes)
  q or Ctrl+C  Quit the application (Ctrl+C while typing notes)

WORKFLOW
  1. Select a project
  2. Select a task
  3. Enter ticket number and description (e.g., "TICKET-123 - Add new feature")
  4. Press Enter to start the timer
  5. Press Enter again to stop the timer

Your Harvest timer will sync automatically with the web interface.
"""

LIST_FOOTER = "Press ↑/↓ to navigate, / to filter, Enter to select, Esc to go back, ? for help, q to quit"
DETAILS_FOOTER = "Press Enter to start/stop timer, Esc to go back, F1 for help, Ctrl+C to quit"
DEFAULT_FOOTER = "Press ? for help, q to quit"

LINES_PER_ITEM = 2


def list_capacity(rows: int, columns: int, with_project: bool = False) -> int:
    """How many list items fit on a rows x columns screen.

    Reserves the title and its blank line, the list heading, the filter
    line, the blank line under it, and the (possibly wrapped) footer with its
    leading blank line. The task list also shows the project and a blank.
    """
    footer_lines = -(-len(LIST_FOOTER) // max(1, columns))
    chrome = 2 + 3 + 1 + footer_lines
    if with_project:
        chrome += 2
    return max(1, (rows - chrome) // LINES_PER_ITEM)


def _render_list(title: str, items: Sequence, picker: Optional[ListPicker], empty_text: str) -> Fragments:
    frags: Fragments = [('class:list.title', f"{title}\n")]
    if picker is not None and (picker.filtering or picker.filter_text):
        cursor_mark = '_' if picker.filtering else ''
        frags.append(('class:list.filter', f"Filter: {picker.filter_text}{cursor_mark}\n"))
    frags.append(('', "\n"))
    if not items:
        frags.append(('class:info', f"{empty_text}\n"))
        return frags
    if picker is None:
        indices = list(range(len(items)))
        current, offset, rows = 0, 0, len(items)
    else:
        indices = picker.visible()
        current, offset, rows = picker.cursor, picker.offset, picker.visible_rows
    if not indices:
        frags.append(('class:info', "No items match filter\n"))
        return frags
    for pos in range(offset, min(len(indices), offset + rows)):
        item = items[indices[pos]]
        if pos == current:
            frags.append(('class:list.cursor', f"> {item.name}\n"))
        else:
            frags.append(('class:list.item', f"  {item.name}\n"))
        frags.append(('class:list.meta', f"    ID: {item.id}\n"))
    return frags


def _render_details(state: EnteringDetails) -> Fragments:
    frags: Fragments = [
        ('', f"Project: {state.project.name}\nTask: {state.task.name}\n\n"),
    ]
    if state.notes:
        frags.append(('class:input', f"> {state.notes}"))
    else:
        frags.append(('class:input.placeholder', f"> {NOTES_PLACEHOLDER}"))
    timer = state.active_timer
    if timer is not None:
        frags.append(('class:info', f"\nTimer running: {timer.notes} ({timer.elapsed_hours:.2f} hours)"))
    action = "Stop Timer" if timer is not None else "Start Timer"
    frags.append(('', f"\n\nPress Enter to {action}"))
    if state.pending == START_TIMER:
        frags.append(('class:info', "\n\nStarting timer…"))
    elif state.pending == STOP_TIMER:
        frags.append(('class:info', "\n\nStopping timer…"))
    if state.error:
        frags.append(('class:error', f"\n\nError: {state.error}"))
    if state.success:
        frags.append(('class:success', f"\n\n✓ {state.success}"))
    return frags


def render(state: InteractionState, show_help: bool = False, *,
           project_picker: Optional[ListPicker] = None,
           task_picker: Optional[ListPicker] = None,
           finished: bool = False) -> Fragments:
    """Render a state as prompt_toolkit formatted text. Has no side effects."""
    if finished:
        return [('', "Bye!\n")]
    header: Fragments = [('class:title', f" {APP_TITLE} "), ('', "\n\n")]
    if show_help:
        return header + [('class:help', HELP_TEXT)]
    if isinstance(state, LoadingProjects):
        body: Fragments = [('', "Loading projects...\n")]
        footer = DEFAULT_FOOTER
    elif isinstance(state, LoadingTasks):
        body = [('', f"Project: {state.project.name}\n\nLoading tasks...\n")]
        footer = DEFAULT_FOOTER
    elif isinstance(state, SelectingProject):
        body = _render_list("Select Project", state.projects, project_picker, "No recent projects found")
        footer = LIST_FOOTER
    elif isinstance(state, SelectingTask):
        body = [('', f"Project: {state.project.name}\n\n")]
        body += _render_list("Select Task", state.tasks, task_picker, "No recent tasks for this project")
        footer = LIST_FOOTER
    elif isinstance(state, EnteringDetails):
        body = _render_details(state)
        footer = DETAILS_FOOTER
    elif isinstance(state, ErrorState):
        body = [('class:error', f"Error: {state.message}\n"), ('', "Press q to quit.")]
        footer = DEFAULT_FOOTER
    else:
        raise TypeError(f"Unknown state: {state!r}")
    return header + body + [('class:footer', f"\n\n{footer}")]


def fragments_to_text(fragments: Fragments) -> str:
    return ''.join(text for _style, text in fragments)


# -----------------------------
# Event pump
# -----------------------------
class DaemonExecutor(Executor):
    """Runs every call on its own daemon thread.

    The interpreter does not join daemon threads at exit, so quitting while
    a request hangs returns immediately instead of waiting for its timeout.
    """

    def __init__(self, thread_name_prefix: str = "harvest"):
        self.thread_name_prefix = thread_name_prefix
        self._counter = itertools.count(1)

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()

        def work():
            if not future.set_running_or_notify_cancel():
                return
            try:
                result = fn(*args, **kwargs)
            except BaseException as exc:
                future.set_exception(exc)
            else:
                future.set_result(result)

        name = f"{self.thread_name_prefix}-{next(self._counter)}"
        threading.Thread(target=work, name=name, daemon=True).start()
        return future


class EventPump:
    """Feeds keystrokes and operation results to the engine one at a time."""

    def __init__(self, engine: InteractionEngine, service: TimeTrackingService,
                 on_change: Optional[Callable[[], None]] = None,
                 executor: Optional[Executor] = None):
        self.engine = engine
        self.service = service
        self.on_change = on_change
        self.executor = executor
        self.queue: asyncio.Queue = asyncio.Queue()
        self._workers: Set[asyncio.Future] = set()

    def post(self, event: Event) -> None:
        self.queue.put_nowait(event)

    async def run(self) -> None:
        self._launch(self.engine.start())
        self._changed()
        while not self.engine.finished:
            event = await self.queue.get()
            op = self.engine.handle(event)
            self._changed()
            if op is not None:
                self._launch(op)

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def _launch(self, op: Operation) -> None:
        worker = asyncio.ensure_future(self._perform(op))
        self._workers.add(worker)
        worker.add_done_callback(self._workers.discard)

    async def _perform(self, op: Operation) -> None:
        loop = asyncio.get_running_loop()
        event = await loop.run_in_executor(self.executor, op.run, self.service)
        self.post(event)


# -----------------------------
# UI
# -----------------------------
def build_application(engine: InteractionEngine, pump: EventPump, theme: ThemePreset, **app_kwargs) -> Application:
    project_picker = ListPicker("Select Project")
    task_picker = ListPicker("Select Task")

    def current_picker() -> Optional[ListPicker]:
        if engine.show_help:
            return None
        state = engine.state
        if isinstance(state, SelectingProject):
            project_picker.bind(state.projects)
            _fit(project_picker, with_project=False)
            return project_picker
        if isinstance(state, SelectingTask):
            task_picker.bind(state.tasks)
            _fit(task_picker, with_project=True)
            return task_picker
        return None

    def _fit(picker: ListPicker, with_project: bool) -> None:
        size = app.output.get_size()
        picker.resize(list_capacity(size.rows, size.columns, with_project))

    def get_text():
        current_picker()
        return render(engine.state, engine.show_help, project_picker=project_picker,
                      task_picker=task_picker, finished=engine.finished)

    kb = KeyBindings()

    def _filtering() -> bool:
        picker = current_picker()
        return picker is not None and picker.filtering

    is_list = Condition(lambda: current_picker() is not None)
    is_filtering = Condition(_filtering)
    is_typing = Condition(lambda: isinstance(engine.state, EnteringDetails) and not engine.show_help)
    is_text_entry = is_filtering | is_typing

    @kb.add('c-c')
    def _(event):
        pump.post(Key(QUIT))

    @kb.add('q', filter=~is_text_entry)
    def _(event):
        pump.post(Key(QUIT))

    @kb.add('?', filter=~is_text_entry)
    @kb.add('f1')
    def _(event):
        pump.post(Key(TOGGLE_HELP))

    @kb.add('up', filter=is_list)
    @kb.add('k', filter=is_list & ~is_filtering)
    def _(event):
        current_picker().move(-1)

    @kb.add('down', filter=is_list)
    @kb.add('j', filter=is_list & ~is_filtering)
    def _(event):
        current_picker().move(1)

    @kb.add('/', filter=is_list & ~is_filtering)
    def _(event):
        current_picker().start_filter()

    def _insert(text: str) -> None:
        picker = current_picker()
        if picker is not None and picker.filtering:
            picker.type(text)
        else:
            pump.post(Key(INSERT, text=text))

    @kb.add(Keys.Any, filter=is_text_entry)
    def _(event):
        data = event.data or ''
        if not data or not data.isprintable():
            return
        _insert(data)

    @kb.add(Keys.BracketedPaste, filter=is_text_entry)
    def _(event):
        text = ''.join(ch for ch in ''.join((event.data or '').splitlines()) if ch.isprintable())
        if text:
            _insert(text)

    @kb.add('backspace', filter=is_text_entry)
    def _(event):
        picker = current_picker()
        if picker is not None and picker.filtering:
            picker.backspace()
        else:
            pump.post(Key(DELETE))

    @kb.add('enter')
    def _(event):
        picker = current_picker()
        if picker is not None and picker.filtering:
            picker.accept_filter()
            return
        index = picker.highlighted() if picker is not None else None
        pump.post(Key(SELECT, index=-1 if index is None else index))

    @kb.add('escape', eager=True)
    def _(event):
        picker = current_picker()
        if picker is not None and (picker.filtering or picker.filter_text):
            picker.cancel_filter()
            return
        pump.post(Key(BACK))

    control = FormattedTextControl(get_text, focusable=True, show_cursor=False)
    root = HSplit([Window(content=control, wrap_lines=True)], padding=0)
    app = Application(
        layout=Layout(root),
        key_bindings=kb,
        full_screen=True,
        style=Style.from_dict(theme.style),
        **app_kwargs,
    )
    return app


def run_ui(service: TimeTrackingService, theme: ThemePreset) -> InteractionEngine:
    engine = InteractionEngine()
    app: Optional[Application] = None

    def on_change():
        if app is None:
            return
        app.invalidate()
        if engine.finished and app.is_running:
            app.exit()

    pump = EventPump(engine, service, on_change=on_change, executor=DaemonExecutor())
    app = build_application(engine, pump, theme)
    app.run(pre_run=lambda: app.create_background_task(pump.run()))
    return engine


# -----------------------------
# CLI
# -----------------------------
def main() -> None:
    try:
        cfg = load_config()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        sys.exit(1)
    setup_logging(cfg.log_file, cfg.log_level)
    theme = select_theme(load_theme_presets(THEME_DIR), cfg.theme)

    client = HarvestClient(cfg)
    try:
        client.test_connection()
    except HarvestError as exc:
        logger.error("Connection test failed: %s", exc)
        print(f"\n⛔ ERROR: {exc}\n", file=sys.stderr)
        print("Please check your Harvest API credentials and access.", file=sys.stderr)
        sys.exit(1)

    run_ui(client, theme)
    print("Bye!")


if __name__ == "__main__":
    main()

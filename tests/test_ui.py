from types import SimpleNamespace

import pytest
from prompt_toolkit.data_structures import Size
from prompt_toolkit.input import create_pipe_input
from prompt_toolkit.keys import Keys
from prompt_toolkit.output import DummyOutput

import harvest_tui as ht
from conftest import ALPHA, BETA


@pytest.fixture
def ui():
    engine = ht.InteractionEngine()
    service = ht.InMemoryTimeTracking()
    pump = ht.EventPump(engine, service)
    theme = ht.ThemePreset("Default", dict(ht.BASE_THEME_STYLE))
    with create_pipe_input() as inp:
        app = ht.build_application(engine, pump, theme, input=inp, output=DummyOutput())
        yield SimpleNamespace(engine=engine, pump=pump, app=app)


def fire(app, key, data=""):
    """Call the handler prompt_toolkit would pick: the last active match."""
    active = [b for b in app.key_bindings.get_bindings_for_keys((key,)) if b.filter()]
    assert active, f"no active binding for {key!r}"
    active[-1].handler(SimpleNamespace(data=data, app=app))


def drain(pump):
    events = []
    while not pump.queue.empty():
        events.append(pump.queue.get_nowait())
    return events


def test_application_is_full_screen(ui):
    assert ui.app.full_screen is True


def test_list_navigation_posts_highlighted_index(ui):
    ui.engine.start()
    ui.engine.handle(ht.ProjectsLoaded((ALPHA, BETA)))
    fire(ui.app, Keys.Down)
    fire(ui.app, Keys.ControlM)
    assert drain(ui.pump) == [ht.Key(ht.SELECT, index=1)]


def test_filter_narrows_selection(ui):
    ui.engine.start()
    ui.engine.handle(ht.ProjectsLoaded((ALPHA, BETA)))
    fire(ui.app, "/")
    for ch in "bet":
        fire(ui.app, ch, data=ch)
    fire(ui.app, Keys.ControlM)
    assert drain(ui.pump) == []
    fire(ui.app, Keys.ControlM)
    assert drain(ui.pump) == [ht.Key(ht.SELECT, index=1)]


def test_escape_cancels_filter_before_going_back(ui):
    ui.engine.start()
    ui.engine.handle(ht.ProjectsLoaded((ALPHA, BETA)))
    fire(ui.app, "/")
    fire(ui.app, "q", data="q")
    fire(ui.app, Keys.Escape)
    assert drain(ui.pump) == []
    fire(ui.app, Keys.Escape)
    assert drain(ui.pump) == [ht.Key(ht.BACK)]


def test_typing_notes_posts_text_and_q_does_not_quit(ui):
    ui.engine.start()
    ui.engine.handle(ht.ProjectsLoaded((ALPHA,)))
    ui.engine.handle(ht.Key(ht.SELECT, index=0))
    ui.engine.handle(ht.TasksLoaded(1, (ht.Task(10, "Build"),)))
    ui.engine.handle(ht.Key(ht.SELECT, index=0))
    fire(ui.app, "q", data="q")
    fire(ui.app, Keys.ControlH)
    fire(ui.app, Keys.F1)
    fire(ui.app, Keys.ControlC)
    assert drain(ui.pump) == [
        ht.Key(ht.INSERT, text="q"),
        ht.Key(ht.DELETE),
        ht.Key(ht.TOGGLE_HELP),
        ht.Key(ht.QUIT),
    ]


def test_q_quits_outside_text_entry(ui):
    fire(ui.app, "q", data="q")
    fire(ui.app, "?", data="?")
    assert drain(ui.pump) == [ht.Key(ht.QUIT), ht.Key(ht.TOGGLE_HELP)]


def _enter_details(engine):
    engine.start()
    engine.handle(ht.ProjectsLoaded((ALPHA,)))
    engine.handle(ht.Key(ht.SELECT, index=0))
    engine.handle(ht.TasksLoaded(1, (ht.Task(10, "Build"),)))
    engine.handle(ht.Key(ht.SELECT, index=0))


def test_paste_into_notes_drops_line_breaks(ui):
    _enter_details(ui.engine)
    fire(ui.app, Keys.BracketedPaste, data="TCK-9\r\n - fix\n")
    assert drain(ui.pump) == [ht.Key(ht.INSERT, text="TCK-9 - fix")]


def test_paste_into_filter(ui):
    ui.engine.start()
    ui.engine.handle(ht.ProjectsLoaded((ALPHA, BETA)))
    fire(ui.app, "/")
    fire(ui.app, Keys.BracketedPaste, data="bet\n")
    fire(ui.app, Keys.ControlM)
    fire(ui.app, Keys.ControlM)
    assert drain(ui.pump) == [ht.Key(ht.SELECT, index=1)]


class _TerminalOutput(DummyOutput):
    def __init__(self, rows, columns):
        super().__init__()
        self._size = Size(rows=rows, columns=columns)

    def get_size(self):
        return self._size


def test_list_window_follows_terminal_height():
    engine = ht.InteractionEngine()
    pump = ht.EventPump(engine, ht.InMemoryTimeTracking())
    theme = ht.ThemePreset("Default", dict(ht.BASE_THEME_STYLE))
    projects = tuple(ht.Project(i + 1, f"Project {i + 1}") for i in range(20))
    with create_pipe_input() as inp:
        app = ht.build_application(engine, pump, theme, input=inp, output=_TerminalOutput(24, 80))
        engine.start()
        engine.handle(ht.ProjectsLoaded(projects))
        for _ in range(11):
            fire(app, Keys.Down)
        text = ht.fragments_to_text(app.layout.current_window.content.text())
        fire(app, Keys.ControlM)
    lines = text.split("\n")
    cursor_row = next(i for i, line in enumerate(lines) if line.startswith("> "))
    assert lines[cursor_row] == "> Project 12"
    assert cursor_row < 24
    assert len(lines) <= 24
    assert drain(pump) == [ht.Key(ht.SELECT, index=11)]

import harvest_tui as ht


def _projects(*names):
    return tuple(ht.Project(i + 1, name) for i, name in enumerate(names))


def test_move_is_clamped():
    picker = ht.ListPicker("Select Project")
    picker.bind(_projects("Alpha", "Beta"))
    picker.move(-1)
    assert picker.highlighted() == 0
    picker.move(5)
    assert picker.highlighted() == 1


def test_filter_is_case_insensitive_substring():
    items = _projects("Alpha", "Beta", "Alphabet")
    picker = ht.ListPicker("Select Project")
    picker.bind(items)
    picker.start_filter()
    picker.type("ALPH")
    assert picker.visible() == [0, 2]
    picker.move(1)
    assert picker.highlighted() == 2
    picker.backspace()
    assert picker.cursor == 0


def test_no_match_highlights_nothing():
    picker = ht.ListPicker("Select Project")
    picker.bind(_projects("Alpha"))
    picker.type("zzz")
    assert picker.highlighted() is None
    picker.cancel_filter()
    assert picker.highlighted() == 0
    assert picker.filtering is False


def test_empty_list():
    picker = ht.ListPicker("Select Task")
    picker.bind(())
    picker.move(1)
    assert picker.highlighted() is None


def test_rebinding_same_list_keeps_cursor():
    items = _projects("Alpha", "Beta")
    picker = ht.ListPicker("Select Project")
    picker.bind(items)
    picker.move(1)
    picker.bind(items)
    assert picker.highlighted() == 1
    picker.bind(_projects("Alpha", "Beta"))
    assert picker.highlighted() == 0


def test_scroll_window_follows_cursor():
    picker = ht.ListPicker("Select Project", visible_rows=3)
    picker.bind(_projects(*[f"P{i}" for i in range(10)]))
    picker.move(4)
    assert picker.offset == 2
    picker.move(-4)
    assert picker.offset == 0


def test_resize_keeps_cursor_in_window():
    picker = ht.ListPicker("Select Project")
    picker.bind(_projects(*[f"P{i}" for i in range(20)]))
    picker.move(11)
    assert picker.offset == 0
    picker.resize(8)
    assert picker.offset == 4
    assert picker.offset <= picker.cursor < picker.offset + picker.visible_rows
    picker.resize(0)
    assert picker.visible_rows == 1
    assert picker.offset == 11


def test_list_capacity_reserves_header_and_footer():
    assert ht.list_capacity(24, 80) == 8
    assert ht.list_capacity(24, 80, with_project=True) == 7
    assert ht.list_capacity(24, 200) == 8
    assert ht.list_capacity(5, 80) == 1

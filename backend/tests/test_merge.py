from livescribe.field_store import ClientState, Field
from livescribe.merge import apply_updates, is_duplicate
from livescribe.schemas import ExtractionUpdate, UpdateAction


def _state(**values):
    return ClientState(fields=[Field(id=key, name=key.title(), current_value=value) for key, value in values.items()])


def _update(field_id, action, value=""):
    return ExtractionUpdate(field_id=field_id, action=action, value=value)


def test_append_to_empty_field_has_no_leading_newline():
    state = _state(prefs="")
    changed = apply_updates(state, [_update("prefs", UpdateAction.APPEND, "* new fact")])
    assert state.get("prefs").current_value == "* new fact"
    assert changed == {"prefs": "* new fact"}


def test_append_duplicate_is_case_insensitive():
    state = _state(prefs="* likes tea")
    changed = apply_updates(state, [_update("prefs", UpdateAction.APPEND, "* Likes Tea")])
    assert changed == {}
    assert state.get("prefs").current_value == "* likes tea"


def test_same_append_twice_stores_one_copy():
    state = _state(prefs="")
    update = _update("prefs", UpdateAction.APPEND, "* prefers email")
    apply_updates(state, [update])
    changed = apply_updates(state, [update])
    assert changed == {}
    assert state.get("prefs").current_value == "* prefers email"


def test_append_preserves_order_one_bullet_per_line():
    state = _state(notes="* first")
    apply_updates(state, [
        _update("notes", UpdateAction.APPEND, "  * second  "),
        _update("notes", UpdateAction.APPEND, "* third"),
    ])
    assert state.get("notes").current_value == "* first\n* second\n* third"


def test_append_without_bullet_matches_bulleted_existing():
    state = _state(prefs="* Allergic to peanuts")
    changed = apply_updates(state, [_update("prefs", UpdateAction.APPEND, "allergic to peanuts")])
    assert changed == {}


def test_replace_with_equal_value_reports_no_change():
    state = _state(name="Dana Smith")
    changed = apply_updates(state, [_update("name", UpdateAction.REPLACE, "  Dana Smith ")])
    assert changed == {}


def test_replace_sets_trimmed_value():
    state = _state(name="Dana")
    changed = apply_updates(state, [_update("name", UpdateAction.REPLACE, " Dana Smith\n")])
    assert state.get("name").current_value == "Dana Smith"
    assert changed == {"name": "Dana Smith"}


def test_skip_and_unknown_fields_are_ignored():
    state = _state(name="Dana")
    changed = apply_updates(state, [
        _update("name", UpdateAction.SKIP, "ignored"),
        _update("missing", UpdateAction.APPEND, "* orphan"),
    ])
    assert changed == {}
    assert state.get("name").current_value == "Dana"
    assert state.get("missing") is None


def test_changes_are_consolidated_per_field():
    state = _state(a="", b="x")
    changed = apply_updates(state, [
        _update("a", UpdateAction.APPEND, "* one"),
        _update("a", UpdateAction.APPEND, "* two"),
        _update("b", UpdateAction.REPLACE, "y"),
    ])
    assert changed == {"a": "* one\n* two", "b": "y"}


def test_is_duplicate_only_strips_leading_bullet():
    assert is_duplicate("* likes tea", "* LIKES TEA")
    assert not is_duplicate("likes tea", "* likes coffee")

import logging

import pytest

from pocketlm.engine.conversation import Conversation
from pocketlm.engine.errors import TemplateRenderError


def test_render_and_diff_returns_unsent_suffix(backend):
    conv = Conversation(backend, "tpl")
    conv.append("system", "Be brief.")
    conv.append("user", "Hi")

    first = conv.render_and_diff()
    assert first == "<system>Be brief.</system><user>Hi</user><assistant>"
    assert conv.prev_len == len(first)


def test_render_and_diff_is_idempotent(backend):
    conv = Conversation(backend, "tpl")
    conv.append("user", "Hi")
    assert conv.render_and_diff() != ""
    assert conv.render_and_diff() == ""


def test_commit_turn_persist_moves_prev_len_past_closed_turn(backend):
    conv = Conversation(backend, "tpl")
    conv.append("user", "Hi")
    conv.render_and_diff()
    conv.append("assistant", "Hello!")
    conv.commit_turn(persist=True)

    expected = "<user>Hi</user><assistant>Hello!</assistant>"
    assert conv.rendered == expected
    assert conv.prev_len == len(expected)

    conv.append("user", "Again")
    assert conv.render_and_diff() == "<user>Again</user><assistant>"


def test_commit_turn_without_persist_clears_history(backend):
    conv = Conversation(backend, "tpl")
    conv.append("user", "Hi")
    conv.render_and_diff()
    conv.commit_turn(persist=False)
    assert len(conv) == 0
    assert conv.prev_len == 0
    assert conv.rendered == ""


def test_prefix_drift_is_logged(backend, caplog):
    renders = iter(["<a>one", "<b>one<b>two"])
    backend.render_chat = lambda template, messages, *, add_generation_prompt: next(renders)
    conv = Conversation(backend, "tpl")
    conv.append("user", "one")
    assert conv.render_and_diff() == "<a>one"
    conv.append("user", "two")
    with caplog.at_level(logging.WARNING, logger="pocketlm.engine.conversation"):
        suffix = conv.render_and_diff()
    assert "not prefix-stable" in caplog.text
    assert suffix == "<b>two"


def test_template_failure_propagates(backend):
    backend.fail_render = True
    conv = Conversation(backend, "tpl")
    conv.append("user", "Hi")
    with pytest.raises(TemplateRenderError):
        conv.render_and_diff()


def test_append_rejects_unknown_role(backend):
    conv = Conversation(backend, "tpl")
    with pytest.raises(ValueError, match="Unknown chat role"):
        conv.append("tool", "x")

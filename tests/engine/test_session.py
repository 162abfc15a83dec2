import pytest

from pocketlm.engine.registry import _ADAPTER_REGISTRY, register_adapter
from pocketlm.engine.session import ChatSession, MultimodalSession
from pocketlm.engine.types import DEFAULT_CHAT_TEMPLATE, InferenceParams, MultimodalParams


@pytest.fixture
def registered(backend):
    """Register the fake backend class so sessions can load through the registry."""
    saved = dict(_ADAPTER_REGISTRY)
    register_adapter("fake", type(backend))
    yield
    _ADAPTER_REGISTRY.clear()
    _ADAPTER_REGISTRY.update(saved)


def test_hi_scenario_sets_prev_len_to_closed_turn(backend):
    backend.script_text("Hello!")
    session = ChatSession(backend, template="tpl", store_chats=True)

    assert session.get_response("Hi") == "Hello!"

    assert [(m.role, m.content) for m in session.history] == [("user", "Hi"), ("assistant", "Hello!")]
    expected = "<user>Hi</user><assistant>Hello!</assistant>"
    assert session.conversation.prev_len == len(expected)


def test_second_turn_only_sends_new_text(backend):
    session = ChatSession(backend, template="tpl", store_chats=True)
    backend.script_text("Hello!")
    session.get_response("Hi")
    n_past = backend.n_past

    backend.script_text("Sure.")
    assert session.get_response("More") == "Sure."
    assert backend.tokenized[-1] == "<user>More</user><assistant>"
    first_batch_of_turn = [b for b in backend.decoded if len(b.tokens) > 1][-1]
    assert first_batch_of_turn.positions[0] == n_past
    assert "clear_memory" not in backend.calls


def test_history_dropped_without_store_chats(backend):
    session = ChatSession(backend, template="tpl", store_chats=False)
    backend.script_text("Hello!")
    assert session.get_response("Hi") == "Hello!"
    assert session.history == ()
    assert session.conversation.prev_len == 0


def test_stream_response_skips_pending_fragments(backend):
    backend.script_text("é!")
    session = ChatSession(backend, template="tpl", store_chats=True)
    assert list(session.stream_response("Hi")) == ["é", "!"]


def test_closing_stream_early_commits_partial_reply(backend):
    backend.script_text("abc")
    session = ChatSession(backend, template="tpl", store_chats=True)
    stream = session.stream_response("Hi")
    assert next(stream) == "a"
    stream.close()
    assert session.history[-1].content == "a"


def test_system_and_assistant_messages_precede_prompt(backend):
    session = ChatSession(backend, template="tpl", store_chats=True)
    session.add_system_prompt("Be brief.")
    session.add_assistant_message("Welcome.")
    session.add_user_message("Earlier question")
    backend.script_text("ok")
    session.get_response("Now")
    assert backend.tokenized[0] == (
        "<system>Be brief.</system><assistant>Welcome.</assistant>"
        "<user>Earlier question</user><user>Now</user><assistant>"
    )


def test_add_chat_message_rejects_unknown_role(backend):
    session = ChatSession(backend, template="tpl", store_chats=True)
    with pytest.raises(ValueError):
        session.add_chat_message("x", "tool")


def test_close_releases_sampler_then_backend_and_is_idempotent(backend):
    session = ChatSession(backend, template="tpl", store_chats=True)
    session.close()
    session.close()
    assert backend.calls == ["free_sampler", "unload"]


def test_calls_after_close_raise(backend):
    with ChatSession(backend, template="tpl", store_chats=True) as session:
        pass
    with pytest.raises(RuntimeError, match="Model is not loaded"):
        session.get_response("Hi")
    with pytest.raises(RuntimeError, match="Model is not loaded"):
        session.completion_step()
    with pytest.raises(RuntimeError, match="Model is not loaded"):
        _ = session.response_generation_speed


def test_context_size_used_tracks_memory(backend):
    backend.script_text("ab")
    session = ChatSession(backend, template="tpl", store_chats=True)
    session.get_response("Hi")
    assert session.context_size_used == backend.n_past
    assert session.context_size == backend.n_ctx


def test_load_through_registry_configures_sampler(registered):
    params = InferenceParams(min_p=0.2, temperature=0.5, context_size=256, n_threads=2, seed=7)
    session = ChatSession.load("some/model", params, backend="fake")

    adapter = session.backend
    assert adapter.load_kwargs["model_path"] == "some/model"
    assert adapter.load_kwargs["context_size"] == 256
    assert adapter.load_kwargs["n_threads"] == 2
    assert adapter.sampler == {"min_p": 0.2, "temperature": 0.5, "top_k": 40, "seed": 7}
    assert session.conversation.template == DEFAULT_CHAT_TEMPLATE
    assert session.store_chats is True


def test_load_prefers_explicit_chat_template(registered):
    session = ChatSession.load("m", InferenceParams(chat_template="{{ messages }}"), backend="fake")
    assert session.conversation.template == "{{ messages }}"


def test_load_rejects_invalid_params(registered):
    with pytest.raises(ValueError, match="'min_p'"):
        ChatSession.load("m", InferenceParams(min_p=1.5), backend="fake")


def test_multimodal_load_requires_multimodal_backend(registered):
    with pytest.raises(ValueError, match="does not support images"):
        MultimodalSession.load("m", MultimodalParams(), backend="fake")


def test_multimodal_close_clears_frames(vision_backend):
    session = MultimodalSession(vision_backend, template="tpl")
    session.add_frame_rgb(b"\x00\x00\x00", 1, 1)
    session.close()
    assert session.frame_count == 0
    assert vision_backend.calls == ["free_sampler", "unload"]

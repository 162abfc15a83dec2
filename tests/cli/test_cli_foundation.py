from pathlib import Path

import pytest

import apps.cli.chat_repl as chat_repl_mod
from apps.cli.main import build_parser, inference_params_from_args, main, multimodal_params_from_args


def test_parser_chat_defaults():
    parser = build_parser()
    args = parser.parse_args(["chat", "--model", "org/model"])
    assert args.command == "chat"
    assert args.backend == "transformers"
    params = inference_params_from_args(args)
    assert params.min_p == 0.1
    assert params.temperature == 0.8
    assert params.store_chats is True
    assert params.chat_template is None


def test_parser_chat_flags(tmp_path):
    template = tmp_path / "tpl.jinja"
    template.write_text("{{ messages }}", encoding="utf-8")
    parser = build_parser()
    args = parser.parse_args(
        [
            "--log-level",
            "DEBUG",
            "chat",
            "--model",
            "m",
            "--no-store-chats",
            "--context-size",
            "2048",
            "--chat-template",
            str(template),
            "--mlock",
        ]
    )
    params = inference_params_from_args(args)
    assert args.log_level == "DEBUG"
    assert params.store_chats is False
    assert params.context_size == 2048
    assert params.chat_template == "{{ messages }}"
    assert params.use_mlock is True


def test_parser_describe_collects_images():
    parser = build_parser()
    args = parser.parse_args(["describe", "--model", "m", "--image", "a.png", "--image", "b.png", "--prompt", "What?"])
    assert args.image == [Path("a.png"), Path("b.png")]
    params = multimodal_params_from_args(args)
    assert params.mmproj_path is None
    assert params.min_p == 0.05
    assert params.temperature == 0.2
    assert params.n_gpu_layers == 35


def test_main_without_command_prints_help(capsys):
    assert main([]) == 2
    assert "usage" in capsys.readouterr().out


def test_main_rejects_invalid_sampling(capsys):
    assert main(["chat", "--model", "m", "--min-p", "2"]) == 2
    assert "'min_p'" in capsys.readouterr().err


def test_load_frame_reads_rgb(tmp_path):
    Image = pytest.importorskip("PIL.Image", reason="pillow not installed")
    from apps.cli.main import load_frame

    path = tmp_path / "img.png"
    Image.new("RGBA", (3, 2), (10, 20, 30, 255)).save(path)
    pixels, width, height = load_frame(path)
    assert (width, height) == (3, 2)
    assert len(pixels) == 3 * 2 * 3
    assert pixels[:3] == bytes([10, 20, 30])


class _FakeSession:
    def __init__(self) -> None:
        self.prompts: list[str] = []
        self.system: list[str] = []
        self.closed = False

    def add_system_prompt(self, text: str) -> None:
        self.system.append(text)

    def stream_response(self, text: str):
        self.prompts.append(text)
        yield "echo:"
        yield text

    @property
    def response_generation_speed(self) -> float:
        return 12.5

    @property
    def context_size_used(self) -> int:
        return 42

    @property
    def context_size(self) -> int:
        return 1024

    def close(self) -> None:
        self.closed = True


def _run_repl(monkeypatch, lines, *, system_prompt=None):
    monkeypatch.setattr(chat_repl_mod, "_setup_readline_history", lambda: None)
    monkeypatch.setattr(chat_repl_mod, "_setup_completer", lambda: None)
    feed = iter(lines)

    def fake_input(prompt: str = "") -> str:
        try:
            return next(feed)
        except StopIteration:
            raise EOFError

    monkeypatch.setattr("builtins.input", fake_input)
    sessions: list[_FakeSession] = []

    def factory():
        sessions.append(_FakeSession())
        return sessions[-1]

    code = chat_repl_mod.chat_repl(session_factory=factory, system_prompt=system_prompt)
    return code, sessions


def test_repl_streams_reply_and_reports_stats(monkeypatch, capsys):
    code, sessions = _run_repl(monkeypatch, ["Hi", "/stats", "/exit"], system_prompt="Be brief.")
    out = capsys.readouterr().out
    assert code == 0
    assert sessions[0].prompts == ["Hi"]
    assert sessions[0].system == ["Be brief."]
    assert "echo:Hi" in out
    assert "tok/s=12.50" in out
    assert "context=42/1024" in out
    assert sessions[0].closed is True


def test_repl_clear_starts_fresh_session(monkeypatch):
    code, sessions = _run_repl(monkeypatch, ["/clear", "again"])
    assert code == 0
    assert len(sessions) == 2
    assert sessions[0].closed is True
    assert sessions[1].prompts == ["again"]


def test_repl_system_command(monkeypatch):
    _, sessions = _run_repl(monkeypatch, ["/system be terse", "/system"])
    assert sessions[0].system == ["be terse"]

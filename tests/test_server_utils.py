import socket

import pytest

from lecture_assist.cli.server import (
    INDEX_HTML_TEMPLATE,
    _assert_port_bindable,
    _relay_settings,
    _split_csv,
    _upstream_settings,
    parse_args,
)

_ENV_KEYS = [
    "PORT",
    "ROOT_DIR",
    "COURSE_NAME",
    "SAVE_AUDIO",
    "DO_TRANSLATE",
    "TARGET_LANGUAGE",
    "LANGUAGE_HINTS",
    "SOURCE_LANGUAGE",
    "MODEL",
    "SILENCE_FINALIZE_MS",
    "MAX_SEGMENT_MS",
    "EMIT_EMPTY_SEGMENTS",
    "SONIOX_API_KEY",
]


@pytest.fixture
def clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_parse_args_defaults(clean_env):
    args = parse_args([])
    assert args.port == 4350
    assert args.root_dir == "./storage"
    assert args.save_audio is True
    assert args.translate is True
    assert args.target_language == "zh"
    assert args.language_hints == ["ja"]
    assert args.model == "stt-rt-preview"
    assert args.async_model == "stt-async-preview"
    assert args.silence_finalize_ms == 2000
    assert args.max_segment_ms == 0
    assert args.finalize_tick_ms == 500
    assert args.emit_empty_segments is False
    assert args.api_key == ""
    assert args.log_level == "info"


def test_parse_args_reads_environment(clean_env):
    clean_env.setenv("PORT", "5001")
    clean_env.setenv("SAVE_AUDIO", "false")
    clean_env.setenv("DO_TRANSLATE", "0")
    clean_env.setenv("LANGUAGE_HINTS", "ja, en")
    clean_env.setenv("SILENCE_FINALIZE_MS", "1500")
    clean_env.setenv("SONIOX_API_KEY", "sk-env")
    args = parse_args([])
    assert args.port == 5001
    assert args.save_audio is False
    assert args.translate is False
    assert args.language_hints == ["ja", "en"]
    assert args.silence_finalize_ms == 1500
    assert args.api_key == "sk-env"


def test_parse_args_invalid_env_falls_back_to_default(clean_env):
    clean_env.setenv("SILENCE_FINALIZE_MS", "soon")
    assert parse_args([]).silence_finalize_ms == 2000


def test_parse_args_cli_overrides_environment(clean_env):
    clean_env.setenv("TARGET_LANGUAGE", "en")
    args = parse_args(["--target-language", "ko", "--no-save-audio", "--language-hints", "zh,ja", "--max-segment-ms", "15000"])
    assert args.target_language == "ko"
    assert args.save_audio is False
    assert args.language_hints == ["zh", "ja"]
    assert args.max_segment_ms == 15000


def test_source_language_defaults_to_first_hint(clean_env):
    args = parse_args(["--language-hints", "en,ja"])
    assert _relay_settings(args).source_language == "en"
    args = parse_args(["--language-hints", "en,ja", "--source-language", "ja"])
    assert _relay_settings(args).source_language == "ja"


def test_upstream_settings_follow_args(clean_env):
    args = parse_args(["--no-translate", "--api-key", "sk-cli", "--no-enable-endpoint-detection"])
    settings = _upstream_settings(args)
    assert settings.api_key == "sk-cli"
    assert settings.enable_endpoint_detection is False
    assert "translation" not in settings.config_message()


def test_split_csv_drops_blanks():
    assert _split_csv(" ja, ,en,") == ["ja", "en"]
    assert _split_csv(None) == []


def test_index_template_has_placeholders():
    for marker in ("__CHUNK_MS__", "__POLL_MS__", "__WS_PATH__", "__SOURCE_LABEL__", "__TARGET_LABEL__"):
        assert marker in INDEX_HTML_TEMPLATE
    assert 'form.append("audio", file)' in INDEX_HTML_TEMPLATE
    assert "/export/srt" in INDEX_HTML_TEMPLATE


def test_port_precheck_rejects_occupied_port():
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    probe.listen(1)
    port = int(probe.getsockname()[1])
    try:
        with pytest.raises(RuntimeError, match="not bindable"):
            _assert_port_bindable("127.0.0.1", port)
    finally:
        probe.close()


def test_port_precheck_accepts_free_port():
    probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    probe.bind(("127.0.0.1", 0))
    port = int(probe.getsockname()[1])
    probe.close()
    _assert_port_bindable("127.0.0.1", port)

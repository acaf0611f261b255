"""Tests for the cli module."""

import json
from unittest.mock import AsyncMock, patch

import pytest

from support_chat import vector_store as vs
from support_chat.cli import _setup_logging, chat, ingest, load_chunk_records, main
from support_chat.config import AppConfig, LLMConfig
from support_chat.errors import ConfigurationError, StoreUnavailable
from support_chat.models import Persona

from conftest import DOC1_URL, FakeOllama


def _write_records(path, rows) -> str:
    path.write_text("\n".join(json.dumps(r) for r in rows) + "\n", encoding="utf-8")
    return str(path)


RECORDS = [
    {
        "id": "1",
        "contents": "Reset the device by holding the power button.",
        "title": "Device Reset Guide",
        "chunk_id": 0,
        "s3_url": DOC1_URL,
    },
    {
        "id": "2",
        "contents": "Billing questions go to the finance desk.",
        "title": "Billing FAQ",
        "chunk_id": 0,
        "s3_url": "https://x/billing.pdf",
    },
]


class TestSetupLogging:
    def test_default_level_is_info(self) -> None:
        with patch("support_chat.cli.logging.basicConfig") as mock_basic:
            _setup_logging()
            mock_basic.assert_called_once()
            assert mock_basic.call_args[1]["level"] == 20  # logging.INFO

    def test_verbose_sets_debug(self) -> None:
        with patch("support_chat.cli.logging.basicConfig") as mock_basic:
            _setup_logging(verbose=True)
            mock_basic.assert_called_once()
            assert mock_basic.call_args[1]["level"] == 10  # logging.DEBUG


class TestLoadChunkRecords:
    def test_reads_records(self, tmp_path) -> None:
        path = _write_records(tmp_path / "chunks.jsonl", RECORDS)

        chunks = load_chunk_records(path)

        assert [c.id for c in chunks] == ["1", "2"]
        assert chunks[0].source_url == DOC1_URL
        assert chunks[0].chunk_id == "0"
        assert chunks[0].embedding is None

    def test_skips_blank_lines(self, tmp_path) -> None:
        path = tmp_path / "chunks.jsonl"
        path.write_text("\n" + json.dumps(RECORDS[0]) + "\n\n", encoding="utf-8")

        assert len(load_chunk_records(str(path))) == 1

    def test_invalid_json(self, tmp_path) -> None:
        path = tmp_path / "chunks.jsonl"
        path.write_text("{not json}\n", encoding="utf-8")

        with pytest.raises(ValueError, match="invalid JSON"):
            load_chunk_records(str(path))

    def test_missing_contents(self, tmp_path) -> None:
        path = _write_records(tmp_path / "chunks.jsonl", [{"id": "1"}])

        with pytest.raises(ValueError, match="required"):
            load_chunk_records(path)


class TestIngest:
    def test_embeds_and_stores(self, tmp_path, store_config) -> None:
        path = _write_records(tmp_path / "chunks.jsonl", RECORDS)
        fake = FakeOllama()
        cfg = AppConfig(vector_store=store_config)

        with patch("support_chat.cli.build_ollama_client", return_value=fake):
            added = ingest(path, config=cfg)

        assert added == 2
        assert fake.embed_calls == [r["contents"] for r in RECORDS]
        client = vs.get_client(store_config)
        collection = vs.get_or_create_collection(client, store_config.collection_name)
        assert collection.count() == 2

    @patch("support_chat.cli.vs")
    def test_no_records(self, mock_vs, tmp_path, capsys) -> None:
        path = tmp_path / "empty.jsonl"
        path.write_text("", encoding="utf-8")

        assert ingest(str(path)) == 0

        captured = capsys.readouterr()
        assert "No chunk records found" in captured.out
        mock_vs.add_chunks.assert_not_called()


class TestChat:
    @pytest.fixture
    def pipeline(self, make_pipeline, seeded_store):
        with patch("support_chat.cli.build_pipeline", return_value=make_pipeline(seeded_store)):
            yield

    @patch("builtins.input", side_effect=["quit"])
    def test_quit_command(self, mock_input, pipeline, capsys) -> None:
        chat()

        captured = capsys.readouterr()
        assert "Goodbye!" in captured.out

    @pytest.mark.parametrize("command", ["exit", "q"])
    def test_exit_commands(self, command, pipeline, capsys) -> None:
        with patch("builtins.input", side_effect=[command]):
            chat()

        assert "Goodbye!" in capsys.readouterr().out

    @patch("builtins.input", side_effect=["", "quit"])
    def test_empty_input_skipped(self, mock_input, pipeline) -> None:
        chat()

        assert mock_input.call_count == 2

    @patch("builtins.input", side_effect=["How do I reset a device?", "quit"])
    def test_prints_answer_and_references(self, mock_input, pipeline, capsys) -> None:
        chat()

        out = capsys.readouterr().out
        assert "hold the power button" in out
        assert "{{url:" not in out
        assert f"📎 {DOC1_URL}" in out

    @patch("builtins.input", side_effect=["hello", "quit"])
    def test_advice_persona_banner(self, mock_input, pipeline, capsys) -> None:
        chat(Persona.ADVICE)

        assert "advice persona" in capsys.readouterr().out

    @patch("builtins.input", side_effect=["How do I reset a device?", "quit"])
    def test_failed_turn_prints_apology(self, mock_input, make_pipeline, capsys) -> None:
        store = AsyncMock()
        store.search.side_effect = StoreUnavailable("down")
        with patch("support_chat.cli.build_pipeline", return_value=make_pipeline(store)):
            chat()

        out = capsys.readouterr().out
        assert "Sorry, something went wrong" in out
        assert "Goodbye!" in out

    @patch("builtins.input", side_effect=EOFError)
    def test_eof_exits_gracefully(self, mock_input, pipeline, capsys) -> None:
        chat()

        assert "Goodbye!" in capsys.readouterr().out

    @patch("builtins.input", side_effect=KeyboardInterrupt)
    def test_keyboard_interrupt_exits_gracefully(self, mock_input, pipeline, capsys) -> None:
        chat()

        assert "Goodbye!" in capsys.readouterr().out

    def test_missing_credentials(self) -> None:
        with pytest.raises(ConfigurationError):
            chat(config=AppConfig(llm=LLMConfig(host="")))


class TestMain:
    @patch("support_chat.cli.ingest")
    @patch("support_chat.cli._setup_logging")
    def test_ingest_command(self, mock_logging, mock_ingest) -> None:
        with patch("sys.argv", ["support-chat", "ingest", "--file", "chunks.jsonl"]):
            main()

        mock_logging.assert_called_once_with(False)
        mock_ingest.assert_called_once_with("chunks.jsonl")

    @patch("support_chat.cli._setup_logging")
    def test_ingest_requires_file(self, mock_logging) -> None:
        with patch("sys.argv", ["support-chat", "ingest"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code == 2

    @patch("support_chat.cli.chat")
    @patch("support_chat.cli._setup_logging")
    def test_chat_command(self, mock_logging, mock_chat) -> None:
        with patch("sys.argv", ["support-chat", "chat", "--persona", "advice"]):
            main()

        mock_chat.assert_called_once_with(Persona.ADVICE)

    @patch("support_chat.cli.chat")
    @patch("support_chat.cli._setup_logging")
    def test_chat_default_persona(self, mock_logging, mock_chat) -> None:
        with patch("sys.argv", ["support-chat", "chat"]):
            main()

        mock_chat.assert_called_once_with(Persona.DEFAULT)

    @patch("support_chat.cli.serve")
    @patch("support_chat.cli._setup_logging")
    def test_serve_command(self, mock_logging, mock_serve) -> None:
        with patch("sys.argv", ["support-chat", "serve", "--port", "9000"]):
            main()

        mock_serve.assert_called_once_with("127.0.0.1", 9000)

    @patch("support_chat.cli._setup_logging")
    def test_no_command_exits_with_error(self, mock_logging) -> None:
        with patch("sys.argv", ["support-chat"]):
            with pytest.raises(SystemExit) as exc_info:
                main()
            assert exc_info.value.code == 1

    @patch("support_chat.cli.ingest")
    @patch("support_chat.cli._setup_logging")
    def test_verbose_flag(self, mock_logging, mock_ingest) -> None:
        with patch("sys.argv", ["support-chat", "-v", "ingest", "--file", "c.jsonl"]):
            main()

        mock_logging.assert_called_once_with(True)

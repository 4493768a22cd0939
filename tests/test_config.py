import pytest

from raftkv.config import RpcConfig

SAMPLE = (
    "# comment\n"
    "   # indented comment\n"
    "\n"
    "rpcserverip = 127.0.0.1\n"
    "rpcserverport=8000\n"
    "invalid line\n"
    "node0ip=10.0.0.1\n"
    "node0ip=10.0.0.2\n"
    "expr=a=b\n"
    "last=tail"
)


@pytest.fixture
def config(tmp_path):
    path = tmp_path / "test.conf"
    path.write_text(SAMPLE, encoding="utf-8")
    cfg = RpcConfig()
    cfg.load_config_file(path)
    return cfg


def test_spaces_around_key_and_value_are_trimmed(config):
    assert config.load("rpcserverip") == "127.0.0.1"


def test_plain_entry(config):
    assert config.load("rpcserverport") == "8000"


def test_first_occurrence_wins(config):
    assert config.load("node0ip") == "10.0.0.1"


def test_value_may_contain_equals(config):
    assert config.load("expr") == "a=b"


def test_last_line_without_newline(config):
    assert config.load("last") == "tail"


def test_comments_and_invalid_lines_are_ignored(config):
    assert config.load("# comment") == ""
    assert config.load("invalid line") == ""


def test_missing_key_returns_empty(config):
    assert config.load("node9ip") == ""


def test_several_files_accumulate(tmp_path, config):
    extra = tmp_path / "extra.conf"
    extra.write_text("node1ip=10.0.0.9\nrpcserverport=9999\n", encoding="utf-8")
    config.load_config_file(extra)
    assert config.load("node1ip") == "10.0.0.9"
    assert config.load("rpcserverport") == "8000"


def test_missing_file_raises(tmp_path):
    cfg = RpcConfig()
    with pytest.raises(FileNotFoundError):
        cfg.load_config_file(tmp_path / "absent.conf")
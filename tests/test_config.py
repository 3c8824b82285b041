import logging

from chathub.config import HubRuntimeConfig, apply_config_data, load_toml
from chathub.logging_config import configure_logging, parse_level


def test_apply_config_flattens_hub_and_logging_tables() -> None:
    base = HubRuntimeConfig(config_path="/etc/chathub.toml")
    cfg = apply_config_data(
        base,
        {
            "hub": {
                "hub_name": "lobby",
                "history_limit": 20,
                "greeting": "",
                "config_path": "/elsewhere.toml",
                "unknown_key": 1,
            },
            "logging": {"level": "DEBUG", "file": ""},
        },
    )
    assert cfg.hub_name == "lobby"
    assert cfg.history_limit == 20
    assert cfg.greeting is None
    assert cfg.config_path == "/etc/chathub.toml"
    assert cfg.log_level == "DEBUG"
    assert cfg.log_file is None


def test_apply_config_announce_alias() -> None:
    cfg = apply_config_data(HubRuntimeConfig(), {"announce": False})
    assert cfg.announce_on_start is False


def test_load_toml(tmp_path) -> None:
    p = tmp_path / "chathub.toml"
    p.write_text('[hub]\nhub_name = "x"\n', encoding="utf-8")
    assert load_toml(str(p)) == {"hub": {"hub_name": "x"}}


def test_parse_level() -> None:
    assert parse_level("debug", logging.INFO) == logging.DEBUG
    assert parse_level("WARN", logging.INFO) == logging.WARNING
    assert parse_level("15", logging.INFO) == 15
    assert parse_level("", logging.INFO) == logging.INFO
    assert parse_level("bogus", logging.ERROR) == logging.ERROR


def test_configure_logging_file_handler(tmp_path) -> None:
    log_file = tmp_path / "logs" / "hub.log"
    cfg = HubRuntimeConfig(log_console=False, log_file=str(log_file), log_rns_level="ERROR")
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    try:
        configure_logging(cfg, override_level="DEBUG")
        logging.getLogger("chathub.test").debug("written")
        for h in root.handlers:
            h.flush()
        assert "written" in log_file.read_text(encoding="utf-8")
        assert root.level == logging.DEBUG
        assert logging.getLogger("RNS").level == logging.ERROR
    finally:
        for h in list(root.handlers):
            root.removeHandler(h)
            h.close()
        for h in saved[0]:
            root.addHandler(h)
        root.setLevel(saved[1])

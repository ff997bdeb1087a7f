"""
Tests for logging setup and structured events.
"""
import json
import logging

import pytest


class TestLogging:

    @pytest.fixture(autouse=True)
    def _restore_root(self):
        root = logging.getLogger()
        handlers, level = list(root.handlers), root.level
        yield
        for handler in root.handlers:
            if handler not in handlers:
                handler.close()
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_main_process_writes_file(self, tmp_path):
        from cvt_zsl.config import LoggingConfig
        from cvt_zsl.runtime_log import setup_logging
        setup_logging(LoggingConfig(log_level="DEBUG", log_dir=str(tmp_path / "logs")))
        logging.getLogger("cvt_zsl.test").debug("hello from the test")
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "hello from the test" in (tmp_path / "logs" / "training.log").read_text()
        assert logging.getLogger().level == logging.DEBUG

    def test_other_ranks_log_errors_only(self, tmp_path):
        from cvt_zsl.config import LoggingConfig
        from cvt_zsl.runtime_log import setup_logging
        setup_logging(LoggingConfig(log_dir=str(tmp_path / "logs")), rank=1)
        assert logging.getLogger().level == logging.ERROR
        assert not (tmp_path / "logs").exists()

    def test_log_event_is_json(self, caplog):
        from cvt_zsl.runtime_log import log_event
        with caplog.at_level(logging.INFO, logger="cvt_zsl.events"):
            log_event("epoch", val_acc=12.5, epoch=3)
        payload = json.loads(caplog.records[-1].getMessage())
        assert payload == {"event": "epoch", "epoch": 3, "val_acc": 12.5}
        assert list(payload) == sorted(payload)

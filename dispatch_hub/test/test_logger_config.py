import logging

import pytest

from dispatch_hub.utils.logger_config import (
    COURIER_LOGGER,
    CRON_LOGGER,
    configure_production_logging,
    setup_logger,
)


@pytest.fixture
def restore_loggers():
    """dictConfig replaces handlers on the named loggers; put them back after."""
    names = ["dispatch_hub", CRON_LOGGER, COURIER_LOGGER]
    saved = {
        name: (list(logging.getLogger(name).handlers), logging.getLogger(name).propagate)
        for name in names
    }
    yield
    for name, (handlers, propagate) in saved.items():
        logger = logging.getLogger(name)
        for handler in logger.handlers:
            handler.close()
        logger.handlers = handlers
        logger.propagate = propagate
        logger.disabled = False


def _close(logger):
    for handler in logger.handlers:
        handler.close()
    logger.handlers = []


class TestSetupLogger:
    def test_channel_gets_its_own_file(self, tmp_path):
        logger = setup_logger("dispatch_hub.test_channel", log_dir=tmp_path)
        logger.info("booked NCM-1")
        for handler in logger.handlers:
            handler.flush()

        assert (tmp_path / "test_channel.log").read_text().endswith("booked NCM-1\n")
        assert logger.propagate is False
        _close(logger)

    def test_handlers_not_duplicated(self, tmp_path):
        first = setup_logger("dispatch_hub.test_repeat", log_dir=tmp_path)
        second = setup_logger("dispatch_hub.test_repeat", log_dir=tmp_path)

        assert first is second
        assert len(second.handlers) == 2
        _close(second)


class TestProductionLogging:
    def test_courier_traffic_kept_apart(self, tmp_path, restore_loggers):
        configure_production_logging(str(tmp_path))

        logging.getLogger(COURIER_LOGGER).info("webhook for NCM-9")
        logging.getLogger("dispatch_hub").info("order ORD-1 packed")
        for name in ("dispatch_hub", COURIER_LOGGER):
            for handler in logging.getLogger(name).handlers:
                handler.flush()

        assert "webhook for NCM-9" in (tmp_path / "couriers.log").read_text()
        assert "webhook for NCM-9" not in (tmp_path / "app.log").read_text()
        assert "order ORD-1 packed" in (tmp_path / "app.log").read_text()

    def test_errors_collected_from_every_channel(self, tmp_path, restore_loggers):
        configure_production_logging(str(tmp_path))

        logging.getLogger(CRON_LOGGER).error("retry job crashed")
        logging.getLogger(COURIER_LOGGER).warning("unmapped status")
        for handler in logging.getLogger(CRON_LOGGER).handlers:
            handler.flush()

        errors = (tmp_path / "error.log").read_text()
        assert "retry job crashed" in errors
        assert "unmapped status" not in errors

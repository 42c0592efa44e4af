import logging

from mail_scheduler.logger import LOG_FORMAT, configure_logging, get_logger


def test_get_logger_reuses_existing_logger():
    logger = get_logger("TestLogger")
    handler_count = len(logger.handlers)

    same_logger = get_logger("TestLogger")
    assert logger is same_logger
    assert len(same_logger.handlers) == handler_count


def test_default_logger_name():
    assert get_logger().name == "MailScheduler"


def test_configure_logging_forces_format_and_level(monkeypatch):
    calls = []
    monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))

    configure_logging("debug")
    configure_logging("not-a-level")

    assert calls[0]["level"] == logging.DEBUG
    assert calls[0]["format"] == LOG_FORMAT
    assert calls[0]["force"] is True
    assert calls[1]["level"] == logging.INFO

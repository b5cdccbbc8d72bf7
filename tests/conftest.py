import logging

import pytest


@pytest.fixture(autouse=True)
def _reset_volmirror_logging():
    yield
    logger = logging.getLogger("volmirror")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)

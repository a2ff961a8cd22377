import logging

import pytest


@pytest.fixture
def bench_log(caplog):
    """caplog wired to the ApiBench logger, which does not propagate to root."""
    bench_logger = logging.getLogger("ApiBench")
    bench_logger.addHandler(caplog.handler)
    caplog.set_level(logging.DEBUG, logger="ApiBench")
    yield caplog
    bench_logger.removeHandler(caplog.handler)

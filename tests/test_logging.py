import asyncio
import logging

import pytest

from pinrelay.logging import install_fault_handler


@pytest.mark.asyncio
async def test_fault_handler_logs_escaped_exceptions(caplog):
    loop = asyncio.get_running_loop()
    install_fault_handler()
    try:
        with caplog.at_level(logging.ERROR, logger="pinrelay.faults"):

            def explode():
                raise ValueError("callback blew up")

            loop.call_soon(explode)
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            loop.call_exception_handler({"message": "loop complained"})
    finally:
        loop.set_exception_handler(None)

    messages = [r.getMessage() for r in caplog.records]
    assert any(
        "ValueError: callback blew up" in message for message in messages
    )
    assert "loop complained" in messages
    failed = next(r for r in caplog.records if r.exc_info)
    assert failed.name == "pinrelay.faults"

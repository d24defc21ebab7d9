"""
Isolated worker entry point.

Runs inside a child process started by DelegatedScheduler. The child
handles exactly one ``process`` request and then exits.
"""

import logging

from ..errors import ChannelError, EngineError, InternalAlgorithmError, ResourceError
from ..protocol import (
    BufferPayload,
    CompletedMessage,
    ErrorMessage,
    ProcessRequest,
    ProgressMessage,
    encode_message,
    parse_message,
)
from .scheduler import CooperativeScheduler, RunPlan

logger = logging.getLogger(__name__)


def handle_request(request: ProcessRequest, send) -> None:
    """
    Run one request, streaming responses through ``send``.

    Args:
        request: Validated process request
        send: Callable taking one protocol message
    """
    try:
        plan = RunPlan.from_options(request.options)
        buffer = request.buffer.to_buffer()
        result = CooperativeScheduler(yield_between_bands=False).run(
            buffer,
            plan,
            on_progress=lambda progress: send(ProgressMessage(progress=progress)),
        )
    except EngineError as e:
        send(ErrorMessage(error=str(e), kind=e.kind))
        return
    except MemoryError:
        send(ErrorMessage(error="Out of memory", kind=ResourceError.kind))
        return

    send(CompletedMessage(
        result=BufferPayload.from_buffer(result.buffer),
        changed_pixels=result.changed_pixels,
    ))


def serve(conn) -> None:
    """Child process main: read one request from ``conn``, answer, exit."""
    def send(message):
        conn.send_bytes(encode_message(message))

    try:
        message = parse_message(conn.recv_bytes())
        if not isinstance(message, ProcessRequest):
            raise ChannelError(f"Expected a process request, got {message.type}")
        handle_request(message, send)
    except ChannelError as e:
        send(ErrorMessage(error=str(e), kind=e.kind))
    except (EOFError, OSError) as e:
        # Host went away; nobody is left to answer
        logger.error(f"Worker channel failed: {e}")
    except Exception as e:
        logger.exception("Worker failed")
        send(ErrorMessage(error=f"{type(e).__name__}: {e}", kind=InternalAlgorithmError.kind))
    finally:
        conn.close()

"""Handler worker process for the botalto sandbox.

Run as a standalone script (``python -I sandbox_worker.py``) by
botalto.sandbox, one process per handler invocation. It must not import
botalto: the parent starts it in isolated mode with an empty
environment.

Protocol:
    stdin:  one JSON object {"source", "context", "limits"}.
    stdout: NDJSON events, one per line:
        {"type": "reply", "text": ...}     for every ctx.reply() call
        {"type": "done"}                   handler returned
        {"type": "error", "category": "HandlerFault",
         "error": <exception type>, "message": ...}
"""

import json
import operator
import sys

from RestrictedPython import (
    compile_restricted_function,
    limited_builtins,
    safe_builtins,
    utility_builtins,
)
from RestrictedPython.Eval import default_guarded_getitem, default_guarded_getiter
from RestrictedPython.Guards import (
    full_write_guard,
    guarded_iter_unpack_sequence,
    guarded_unpack_sequence,
    safer_getattr,
)
from RestrictedPython.PrintCollector import PrintCollector

HANDLER_NAME = "handler"

_INPLACE_OPS = {
    "+=": operator.iadd,
    "-=": operator.isub,
    "*=": operator.imul,
    "/=": operator.itruediv,
    "//=": operator.ifloordiv,
    "%=": operator.imod,
    "**=": operator.ipow,
    "<<=": operator.ilshift,
    ">>=": operator.irshift,
    "&=": operator.iand,
    "^=": operator.ixor,
    "|=": operator.ior,
}


def _inplacevar(op, x, y):
    return _INPLACE_OPS[op](x, y)


def _apply(func, *args, **kwargs):
    return func(*args, **kwargs)


class HandlerContext:
    """The only object handler source can reach: one inbound message.

    Exposes ``reply(text)`` plus read-only message fields. Underscore
    attributes are unreachable from restricted code.
    """

    def __init__(self, fields, emit, max_replies):
        self._fields = dict(fields)
        self._emit = emit
        self._max_replies = max_replies
        self._sent = 0

    def reply(self, text):
        if self._sent >= self._max_replies:
            raise RuntimeError(f"reply limit reached ({self._max_replies})")
        self._sent += 1
        self._emit({"type": "reply", "text": str(text)})

    @property
    def text(self):
        return self._fields.get("text", "")

    @property
    def args(self):
        return self._fields.get("args", "")

    @property
    def trigger(self):
        return self._fields.get("trigger", "")

    @property
    def chat_id(self):
        return self._fields.get("chat_id")

    @property
    def sender(self):
        return self._fields.get("sender")


def _apply_limits(limits):
    """Lower rlimits for this process. No-op where ``resource`` is missing."""
    if sys.platform == "win32":
        return
    import resource

    def lower(which, value):
        _, hard = resource.getrlimit(which)
        if hard != resource.RLIM_INFINITY:
            value = min(value, hard)
        resource.setrlimit(which, (value, value))

    lower(resource.RLIMIT_CPU, int(limits.get("cpu_seconds", 5)))
    lower(resource.RLIMIT_AS, int(limits.get("memory_mb", 256)) * 1024 * 1024)
    lower(resource.RLIMIT_FSIZE, 0)
    lower(resource.RLIMIT_NPROC, 0)


def _restricted_globals():
    builtins = dict(safe_builtins)
    builtins.update(limited_builtins)
    builtins.update(utility_builtins)
    return {
        "__builtins__": builtins,
        "__name__": HANDLER_NAME,
        "__metaclass__": type,
        "_getattr_": safer_getattr,
        "_getitem_": default_guarded_getitem,
        "_getiter_": default_guarded_getiter,
        "_iter_unpack_sequence_": guarded_iter_unpack_sequence,
        "_unpack_sequence_": guarded_unpack_sequence,
        "_write_": full_write_guard,
        "_print_": PrintCollector,
        "_inplacevar_": _inplacevar,
        "_apply_": _apply,
    }


def compile_handler(source):
    """Compile handler source into ``handler(ctx)`` under restricted globals.

    Raises:
        SyntaxError: the source does not compile, or uses a construct
            the restricted compiler forbids (imports of private names,
            underscore attributes, exec, ...).
    """
    result = compile_restricted_function(
        p="ctx",
        body=source,
        name=HANDLER_NAME,
        filename="<handler>",
    )
    if result.errors:
        raise SyntaxError("; ".join(result.errors))
    glb = _restricted_globals()
    local_ns = {}
    exec(result.code, glb, local_ns)
    return local_ns[HANDLER_NAME]


def main():
    out = sys.stdout
    # Nothing but protocol events may reach the parent's stdout pipe
    sys.stdout = sys.stderr

    def emit(event):
        out.write(json.dumps(event) + "\n")
        out.flush()

    job = json.loads(sys.stdin.read())
    limits = job.get("limits", {})
    _apply_limits(limits)

    try:
        handler = compile_handler(job.get("source", ""))
        ctx = HandlerContext(
            job.get("context", {}), emit, int(limits.get("max_replies", 20))
        )
        handler(ctx)
    except BaseException as exc:
        emit({
            "type": "error",
            "category": "HandlerFault",
            "error": type(exc).__name__,
            "message": str(exc),
        })
        return 0

    emit({"type": "done"})
    return 0


if __name__ == "__main__":
    sys.exit(main())

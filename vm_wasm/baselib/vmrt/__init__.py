"""
Contract entry-point markers.

    from vmrt import view, call, init

    @view
    def get_balance(account_id: str) -> int: ...

The compiler reads these decorators statically to build the ABI; at runtime
they only record the function in EXPORTS so the host glue can dispatch to it.
"""

EXPORTS = {}
INIT = None


def _mark(kind, fn):
    name = fn.__name__
    if name in EXPORTS:
        raise ValueError("duplicate contract method: " + name)
    EXPORTS[name] = (kind, fn)
    return fn


def view(fn=None, **_opts):
    if fn is None:
        return lambda f: _mark("view", f)
    return _mark("view", fn)


def call(fn=None, **_opts):
    if fn is None:
        return lambda f: _mark("call", f)
    return _mark("call", fn)


def init(fn=None, **_opts):
    global INIT
    if fn is None:
        return lambda f: init(f)
    if INIT is not None:
        raise ValueError("contract already has an init method")
    INIT = fn
    return _mark("init", fn)


def dispatch(name, *args):
    kind, fn = EXPORTS[name]
    return fn(*args)

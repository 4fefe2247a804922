# Annotation-only stand-in for CPython's typing module; every name resolves
# to a subscriptable placeholder so annotations evaluate on the target.


class _Alias:
    def __getitem__(self, _item):
        return self

    def __call__(self, *args, **kwargs):
        return args[-1] if args else None


_ALIAS = _Alias()
TYPE_CHECKING = False


def __getattr__(name):
    return _ALIAS

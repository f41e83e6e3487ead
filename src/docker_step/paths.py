from __future__ import annotations


def expand_relative_volume_path(spec: str, cwd: str) -> str:
    """Anchor a mount spec that starts at ``.`` to ``cwd``.

    docker does not expand relative host paths in ``--volume`` arguments, so
    ``.:/app`` becomes ``<cwd>:/app`` and ``./src:/src`` becomes ``<cwd>/src:/src``.
    Only a marker at the very start of the spec is rewritten.
    """
    if spec.startswith(".:"):
        return f"{cwd}{spec[1:]}"
    if spec.startswith(("./", ".\\")):
        return f"{cwd}/{spec[2:]}"
    return spec

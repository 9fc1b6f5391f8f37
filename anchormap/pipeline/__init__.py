"""Integration pipeline entrypoints."""


def run_pipeline(*args, **kwargs):
    from anchormap.pipeline.integration import run_pipeline as _run_pipeline

    return _run_pipeline(*args, **kwargs)


__all__ = ["run_pipeline"]

from __future__ import annotations


class MarchBotError(RuntimeError):
    pass


class CaptureError(MarchBotError):
    """Screenshot could not be captured or decoded after all retries."""


class StepFailed(MarchBotError):
    """A single macro step failed; the current march attempt is abandoned."""


class CycleFailed(MarchBotError):
    """The poll cycle cannot continue; the worker backs off and starts over."""


class StopRequested(MarchBotError):
    pass

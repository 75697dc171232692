from enum import Enum


class _DisplayEnum(Enum):
    """Enum whose value is the text shown in status files and the broker database."""

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_text(cls, text: str, default=None):
        """Match either the display text or the member name, ignoring case."""
        text = (text or '').strip()
        for member in cls:
            if member.value.lower() == text.lower() or member.name.lower() == text.lower():
                return member
        return default if default is not None else cls._default()

    @classmethod
    def _default(cls):
        raise NotImplementedError


class MgrStatus(_DisplayEnum):
    STOPPED = 'Stopped'
    STOPPED_ERROR = 'Stopped Error'
    RUNNING = 'Running'
    DISABLED_LOCAL = 'Disabled Local'
    DISABLED_MC = 'Disabled MC'

    @classmethod
    def _default(cls):
        return cls.STOPPED


class TaskStatus(_DisplayEnum):
    STOPPED = 'Stopped'
    REQUESTING = 'Requesting'
    RUNNING = 'Running'
    CLOSING = 'Closing'
    FAILED = 'Failed'
    NO_TASK = 'No Task'

    @classmethod
    def _default(cls):
        return cls.NO_TASK


class TaskStatusDetail(_DisplayEnum):
    RETRIEVING_RESOURCES = 'Retrieving Resources'
    RUNNING_TOOL = 'Running Tool'
    PACKAGING_RESULTS = 'Packaging Results'
    DELIVERING_RESULTS = 'Delivering Results'
    CLOSING = 'Closing'
    NO_TASK = 'No Task'

    @classmethod
    def _default(cls):
        return cls.NO_TASK


# Task states that never report a running duration
IDLE_TASK_STATES = (TaskStatus.STOPPED, TaskStatus.FAILED, TaskStatus.NO_TASK)

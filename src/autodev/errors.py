"""Exception types raised across autodev."""


class AutodevError(Exception):
    """Base class for autodev failures."""


class ConfigurationError(AutodevError):
    """The environment cannot support the attempted operation. Never retried."""


class AgentNotFoundError(ConfigurationError):
    """The coding agent binary could not be located."""


class GitVersionError(ConfigurationError):
    """The installed git is too old for worktree isolation."""


class RunnerError(AutodevError):
    """The agent process could not be started or tracked."""


class AgentExecutionError(AutodevError):
    """The agent exited non-zero. Terminal for the current phase."""


class TestsFailedError(AutodevError):
    """The test command kept failing after every allowed retry."""

    __test__ = False


class TemplateNotFoundError(AutodevError):
    """No template file exists for a ticket category."""


class InvalidTransitionError(ValueError):
    """A ticket cannot move to the requested status from its current one."""


class TicketBusyError(ValueError):
    """A ticket already has a pending or running job."""


class GitError(AutodevError):
    """A git command failed."""

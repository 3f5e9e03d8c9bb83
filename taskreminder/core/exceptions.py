"""Domain exceptions."""


class TaskReminderError(Exception):
    """Base class for all application errors."""


class DeliveryError(TaskReminderError):
    """A channel sender could not deliver a notification."""

    def __init__(self, channel: str, message: str):
        self.channel = channel
        super().__init__(f"{channel}: {message}")


class UnsupportedChannelError(TaskReminderError):
    """No sender is registered for the requested channel."""

    def __init__(self, channel: str):
        self.channel = channel
        super().__init__(f"Unknown channel: {channel}")


class RuleNotFoundError(TaskReminderError):
    """Reminder rule does not exist."""

    def __init__(self, rule_id: int):
        self.rule_id = rule_id
        super().__init__(f"Rule {rule_id} not found")


class JobNotFoundError(TaskReminderError):
    """Job status record does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class UnknownJobTypeError(TaskReminderError):
    """Envelope references a job type that is not registered."""

    def __init__(self, job_type: str):
        self.job_type = job_type
        super().__init__(f"Unknown job type: {job_type}")


class TaskNotFoundError(TaskReminderError):
    """Task does not exist."""

    def __init__(self, task_id: int):
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class UserNotFoundError(TaskReminderError):
    """User does not exist."""

    def __init__(self, user_id: int):
        self.user_id = user_id
        super().__init__(f"User {user_id} not found")

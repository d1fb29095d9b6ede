class AdaptationError(Exception):
    """Base class for errors raised by the code adaptation trainer."""


class ConfigurationError(AdaptationError):
    """Fatal setup problem, raised before any group is processed."""


class CodeDimMismatchError(ConfigurationError):
    pass


class MissingCodeError(AdaptationError):
    def __init__(self, key):
        super().__init__(f"No code for set {key}")
        self.key = key


class DuplicateKeyError(AdaptationError):
    def __init__(self, key):
        super().__init__(f"Code for set {key} already written to the output store")
        self.key = key


class CacheFullError(AdaptationError):
    pass


class CacheEmptyError(AdaptationError):
    pass

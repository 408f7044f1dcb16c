class PropagationError(Exception):
    """Base for every error that aborts a propagation run."""


class ConfigError(PropagationError):
    pass


class GraphBuildError(PropagationError):
    pass


class MaterializeError(PropagationError):
    pass


class PlatformError(PropagationError):
    def __init__(self, platform: str, message: str):
        super().__init__(f"[{platform}] {message}")
        self.platform = platform
        self.message = message


class StateLoadError(PropagationError):
    pass

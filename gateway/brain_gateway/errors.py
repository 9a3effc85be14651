"""Error taxonomy for the inference gateway.

Every error carries an HTTP ``status_code`` so the route layer can map it to
a response without knowing the concrete type. Callers that stream see these
raised either from ``dispatch`` itself (target resolution) or before the
first delta (upstream status).
"""


class GatewayError(Exception):
    status_code = 500
    label = "Gateway error"


class ConfigurationError(GatewayError):
    label = "Configuration error"


class ModelNotFound(GatewayError):
    status_code = 404
    label = "Model not found"

    def __init__(self, model: str, models_dir: str):
        self.model = model
        super().__init__(f"Model file not found for '{model}' in {models_dir}")


class ServerStartError(GatewayError):
    status_code = 502
    label = "Model server failed to start"


class HealthCheckTimeout(ServerStartError):
    status_code = 504
    label = "Model server health timeout"

    def __init__(self, model: str, endpoint: str, timeout: float):
        self.model = model
        self.endpoint = endpoint
        super().__init__(
            f"llama-server for '{model}' not healthy at {endpoint} after {timeout:.0f}s"
        )


class ProcessExitedDuringStartup(ServerStartError):
    def __init__(self, model: str, returncode: int | None):
        self.model = model
        self.returncode = returncode
        super().__init__(
            f"llama-server for '{model}' exited during startup (code {returncode})"
        )


class PortExhausted(GatewayError):
    status_code = 503
    label = "No free port"

    def __init__(self, start: int, attempts: int):
        super().__init__(f"No free port found in {attempts} attempts from {start}")


class MissingCredential(GatewayError):
    status_code = 401
    label = "Provider not configured"

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"API key not configured for provider '{provider}'")


class UnsupportedProviderForModel(GatewayError):
    status_code = 400
    label = "Unsupported provider for model"

    def __init__(self, provider: str, model: str, expected: str):
        self.provider = provider
        self.model = model
        super().__init__(
            f"Model '{model}' is only available through '{expected}', not '{provider}'"
        )


class UnknownProvider(GatewayError):
    status_code = 400
    label = "Unknown provider"

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unsupported provider: {provider}")


class InvalidRequest(GatewayError):
    status_code = 400
    label = "Invalid request"


class UpstreamHTTPError(GatewayError):
    status_code = 502
    label = "Upstream error"

    def __init__(self, backend: str, status: int, body: str):
        self.backend = backend
        self.status = status
        self.body = body
        super().__init__(f"{backend} returned HTTP {status}: {body[:300]}")

"""
Exception hierarchy for mfa_service

Wrong, expired or unknown codes are NOT exceptions: the MFA service
returns False/None for those. Exceptions here mean "could not tell".
"""


class MfaError(Exception):
    """Base class for all mfa_service errors"""
    pass


class MfaConfigurationError(MfaError):
    """Missing or inconsistent configuration, raised at startup"""
    pass


class MfaInfrastructureError(MfaError):
    """A collaborator (store, channel, secret material) failed"""

    def __init__(self, message: str, operation: str = None):
        super().__init__(message)
        self.operation = operation


class CredentialStoreError(MfaInfrastructureError):
    """Credential store unreachable or a write could not be committed"""
    pass


class ChannelDeliveryError(MfaInfrastructureError):
    """SMS or email gateway rejected the message or timed out"""

    def __init__(self, message: str, channel: str, operation: str = None):
        super().__init__(message, operation=operation)
        self.channel = channel


class MalformedSecretError(MfaInfrastructureError):
    """Stored TOTP secret is not valid base32"""
    pass

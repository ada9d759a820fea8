"""
Error taxonomy for the SSL tunnel certificate lifecycle.

Every failure that crosses a component boundary is raised as one of these
types, with the underlying library exception chained as ``__cause__``.
"""


class TunnelError(Exception):
    """Base class for all SSL tunnel errors."""

    kind = "tunnel"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message or self.__class__.__name__


class NetworkError(TunnelError):
    """A remote call was unreachable or timed out."""

    kind = "network"


class SubscriptionError(TunnelError):
    """The registration service rejected the subdomain or reclamation request."""

    kind = "subscription"


class ChallengeError(TunnelError):
    """A challenge proof could not be published or was not validated."""

    kind = "challenge"


class IssuanceError(TunnelError):
    """The certificate authority refused to issue the certificate."""

    kind = "issuance"


class PersistenceError(TunnelError):
    """A local storage write failed."""

    kind = "persistence"


class EmailAssociationError(TunnelError):
    """Associating the owner's email with the subdomain failed."""

    kind = "email_association"

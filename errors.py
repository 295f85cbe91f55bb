"""Error taxonomy shared by the ledger, the subscription manager and the panel client."""


class VpnBotError(Exception):
    """Base class for every domain error"""
    retryable = False


class NotFound(VpnBotError):
    def __init__(self, kind, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")


# Panel errors
class PanelError(VpnBotError):
    def __init__(self, panel_name, message):
        self.panel_name = panel_name
        super().__init__(f"[{panel_name}] {message}")


class PanelUnreachable(PanelError):
    retryable = True


class PanelTimeout(PanelError):
    retryable = True


class PanelAuthFailed(PanelError):
    pass


class PanelRequestFailed(PanelError):
    def __init__(self, panel_name, status, detail):
        self.status = status
        self.detail = detail
        super().__init__(panel_name, f"HTTP {status}: {detail}")


# Ledger / manager errors
class InvalidStateTransition(VpnBotError):
    def __init__(self, entity, current, target):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"{entity}: transition {current} -> {target} is not allowed")


class AmountMismatch(VpnBotError):
    def __init__(self, payment_id, expected, received):
        self.payment_id = payment_id
        self.expected = expected
        self.received = received
        super().__init__(
            f"Payment {payment_id}: expected amount {expected}, gateway reported {received}"
        )


class GatewayError(VpnBotError):
    retryable = True


class PaymentNotCompleted(VpnBotError):
    pass


class PaymentAlreadyConsumed(VpnBotError):
    def __init__(self, payment_id, subscription_id):
        self.payment_id = payment_id
        self.subscription_id = subscription_id
        super().__init__(
            f"Payment {payment_id} already backs subscription {subscription_id}"
        )


class UsageDecreaseRejected(VpnBotError):
    def __init__(self, subscription_id, stored, reported):
        self.subscription_id = subscription_id
        self.stored = stored
        self.reported = reported
        super().__init__(
            f"Subscription {subscription_id}: usage report {reported} GB is below stored {stored} GB"
        )


class PlanInUse(VpnBotError):
    pass


class ConfigGenerationFailed(VpnBotError):
    pass


class RemoteDeleteInconsistency(VpnBotError):
    def __init__(self, panel_id, username, cause):
        self.panel_id = panel_id
        self.username = username
        self.cause = cause
        super().__init__(
            f"Remote account {username} on panel {panel_id} could not be deleted: {cause}"
        )


class SessionConflict(VpnBotError):
    retryable = True

class SettlementError(Exception):
    pass


class InvalidCart(SettlementError):
    pass


class UnknownReference(SettlementError):
    pass


class GatewayUnavailable(SettlementError):
    pass


class GatewayTimeout(GatewayUnavailable):
    pass


class AmountMismatch(SettlementError):
    def __init__(self, reference: str, expected: int, actual: int):
        super().__init__(
            f"Payment {reference}: gateway reported {actual}, expected {expected}"
        )
        self.reference = reference
        self.expected = expected
        self.actual = actual


class InvalidSignature(SettlementError):
    pass


class EnrollmentNotFound(SettlementError):
    pass


class InvalidReferral(SettlementError):
    pass


class NothingToPayout(SettlementError):
    pass


class MissingBankDetails(SettlementError):
    pass


class LedgerInconsistency(SettlementError):
    pass

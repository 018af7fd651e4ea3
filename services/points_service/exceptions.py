"""Points ledger errors."""

from libs.common.errors import ServiceError


class PointsError(ServiceError):
    code = "PointsError"


class InsufficientPoints(PointsError):
    code = "InsufficientPoints"
    status_code = 402

    def __init__(self, user_id: str, required: int, available: int):
        self.user_id = user_id
        self.required = required
        self.available = available
        super().__init__(
            f"Not enough points. You need {required} but have {available}."
        )


class InvalidAmount(PointsError):
    code = "InvalidAmount"
    status_code = 422


class BalanceConflict(PointsError):
    code = "BalanceConflict"
    status_code = 409

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(
            f"Balance of {user_id} kept changing during renewal; try again."
        )

from pydantic import BaseModel, ConfigDict, Field


class RecurringTransactionEvent(BaseModel):
    """Payload of the "process one recurring transaction" trigger."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    transaction_id: int = Field(..., alias="transactionId", gt=0)
    user_id: int = Field(..., alias="userId", gt=0)

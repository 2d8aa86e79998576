from pydantic import BaseModel, ConfigDict, Field


class Quote(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    last: float = Field(ge=0)
    percent_change: float = 0.0
    # epoch seconds, local observation time
    observed_at: float


class AnimationState(BaseModel):
    symbol: str
    active_until: float

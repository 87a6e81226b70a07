from pydantic import BaseModel, ConfigDict, Field, StrictStr


class ChatRequest(BaseModel):
    message: StrictStr = Field(min_length=1)


class ChatResponse(BaseModel):
    reply: str


class ErrorResponse(BaseModel):
    error: str


class HealthResponse(BaseModel):
    status: str
    provider: str
    configured: bool
    timestamp: str


class IndexResponse(BaseModel):
    message: str
    status: str
    endpoints: list[str]


class NotFoundResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    error: str = "Not Found"
    available_endpoints: list[str] = Field(alias="availableEndpoints")

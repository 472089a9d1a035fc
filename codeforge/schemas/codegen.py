from pydantic import BaseModel, Field


class CodegenRequest(BaseModel):
    # Length is checked in the route so the error carries a readable message
    prompt: str = ""


class ModelSelectRequest(BaseModel):
    model: str = Field(min_length=1, max_length=200)


class GenerateRequest(BaseModel):
    prompt: str = Field(min_length=1)
    model: str = Field(min_length=1, max_length=200)
    audit: bool | None = None


class EditRequest(BaseModel):
    instruction: str = Field(min_length=1)
    model: str = Field(min_length=1, max_length=200)
    file_to_edit: str = Field("", alias="fileToEdit")
    current_content: str = Field("", alias="currentContent")
    all_files: dict[str, str] | None = Field(None, alias="allFiles")
    audit: bool | None = None

    model_config = {"populate_by_name": True}


class GeneratedFileResponse(BaseModel):
    path: str
    content: str


class CodegenResponse(BaseModel):
    success: bool
    files: list[GeneratedFileResponse]
    provider: str
    cached: bool
    generatedAt: str
    isRefreshing: bool | None = None
    message: str | None = None
    retryAfter: float | None = None
    stats: dict


class ModelSelectResponse(BaseModel):
    success: bool = True
    message: str
    currentModel: str
    note: str = "First generation may take 2-5 minutes if model needs to be downloaded"

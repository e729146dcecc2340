"""Validated shapes of what a brain may ask the system to do."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, model_validator

NonEmpty = Annotated[str, Field(min_length=1)]


class FileWrite(BaseModel):
    path: NonEmpty
    content: NonEmpty


class ProposedWorkItem(BaseModel):
    work_type: NonEmpty
    executor_key: NonEmpty = Field(validation_alias=AliasChoices("executor_key", "agent_key"))
    priority: int = Field(default=5, ge=1, le=10)
    payload: dict[str, Any] = Field(default_factory=dict)


class WorkItemsResponse(BaseModel):
    type: Literal["work_items"]
    work_items: list[ProposedWorkItem] = Field(min_length=1)


class FileWritesResponse(BaseModel):
    type: Literal["file_writes"]
    files: list[FileWrite] = Field(min_length=1)
    message: Optional[str] = None
    pr_title: Optional[str] = None
    pr_body: Optional[str] = None


class CreateIssue(BaseModel):
    operation: Literal["create_issue"]
    title: NonEmpty
    body: str = ""
    labels: list[str] = Field(default_factory=list)


class CreatePullRequest(BaseModel):
    operation: Literal["create_pr"]
    title: Optional[str] = None
    pr_title: Optional[str] = None
    body: str = ""
    pr_body: str = ""
    head: NonEmpty
    base: Optional[str] = None

    @model_validator(mode="after")
    def _require_title(self) -> CreatePullRequest:
        if not (self.title or self.pr_title):
            raise ValueError("title or pr_title is required for create_pr")
        return self


class CreateFilesAndPullRequest(BaseModel):
    operation: Literal["create_files_and_pr"]
    files: list[FileWrite] = Field(min_length=1)
    title: Optional[str] = None
    pr_title: Optional[str] = None
    body: str = ""
    pr_body: str = ""
    message: Optional[str] = None


HostingOperation = Annotated[
    Union[CreateIssue, CreatePullRequest, CreateFilesAndPullRequest],
    Field(discriminator="operation"),
]


class HostingOperationsResponse(BaseModel):
    type: Literal["github_operations"]
    operations: list[HostingOperation] = Field(min_length=1)


class ErrorResponse(BaseModel):
    type: Literal["error"]
    error: NonEmpty
    details: dict[str, Any] = Field(default_factory=dict)


BrainResponse = Annotated[
    Union[WorkItemsResponse, FileWritesResponse, HostingOperationsResponse, ErrorResponse],
    Field(discriminator="type"),
]

brain_response_adapter: TypeAdapter[BrainResponse] = TypeAdapter(BrainResponse)

"""Tests for Pydantic models."""

import pytest
from pydantic import ValidationError

from autocv_api.models import (
    CancelOperationRequest,
    CompleteEvent,
    ErrorEvent,
    HealthResponse,
    InitiateAnalysisResponse,
    OperationInputs,
    RefineAnalysisRequest,
    RefinementRequest,
)


class TestOperationInputs:
    """Tests for OperationInputs model."""

    def test_defaults(self):
        """Test optional inputs default to empty text."""
        inputs = OperationInputs(resume_text="Jane Doe")
        assert inputs.job_posting_text == ""
        assert inputs.client_file_name == ""

    def test_resume_required(self):
        """Test an empty resume is rejected."""
        with pytest.raises(ValidationError):
            OperationInputs(resume_text="")

    def test_frozen(self):
        """Test inputs cannot change after creation."""
        inputs = OperationInputs(resume_text="Jane Doe")
        with pytest.raises(ValidationError):
            inputs.resume_text = "Someone else"

    def test_refinement_frozen(self):
        """Test refinement requests are immutable."""
        refinement = RefinementRequest(target_section="skills", user_instruction="add Go")
        assert refinement.previous_output is None
        with pytest.raises(ValidationError):
            refinement.user_instruction = "add Rust"


class TestApiModels:
    """Tests for camelCase request and response models."""

    def test_refine_request_from_camel_case(self):
        """Test the browser's camelCase body is accepted."""
        request = RefineAnalysisRequest.model_validate(
            {"operationId": "op-1", "section": "skills", "userInput": "add Go", "previousOutput": "{}"}
        )
        assert request.operation_id == "op-1"
        assert request.user_input == "add Go"
        assert request.previous_output == "{}"

    def test_refine_request_requires_fields(self):
        """Test missing or empty fields are rejected."""
        with pytest.raises(ValidationError):
            RefineAnalysisRequest.model_validate({"operationId": "op-1", "section": "skills"})
        with pytest.raises(ValidationError):
            RefineAnalysisRequest.model_validate({"operationId": "op-1", "section": "", "userInput": "x"})

    def test_cancel_request_rejects_empty_id(self):
        """Test that an empty operation id is invalid."""
        with pytest.raises(ValidationError):
            CancelOperationRequest.model_validate({"operationId": ""})

    def test_initiate_response_serializes_camel_case(self):
        """Test response field names match the browser client."""
        response = InitiateAnalysisResponse(operation_id="op-1", file_name="cv.pdf")
        assert response.model_dump(by_alias=True) == {
            "success": True,
            "operationId": "op-1",
            "fileName": "cv.pdf",
        }

    def test_health_response(self):
        """Test health response validation."""
        health = HealthResponse(
            status="healthy",
            generator_mode="mock",
            active_operations=2,
            max_operations=10,
            operation_ttl_seconds=60,
            persistence_enabled=False,
            version="0.3.0",
        )
        assert health.model_dump(by_alias=True)["generatorMode"] == "mock"
        with pytest.raises(ValidationError):
            HealthResponse(
                status="fine",
                generator_mode="mock",
                active_operations=0,
                max_operations=10,
                operation_ttl_seconds=60,
                persistence_enabled=False,
                version="0.3.0",
            )


class TestStreamEvents:
    """Tests for stream event models."""

    def test_complete_event_alias(self):
        """Test completion events carry operationId."""
        event = CompleteEvent(analysis={"summary": "ok"}, operation_id="op-1")
        assert event.model_dump(by_alias=True) == {"analysis": {"summary": "ok"}, "operationId": "op-1"}

    def test_error_event_details_optional(self):
        """Test error events omit absent details."""
        assert ErrorEvent(error="boom").model_dump(exclude_none=True) == {"error": "boom"}

"""
Unit tests for generator_service/errors.py
"""

import pytest

from generator_service import errors
from render_service import RenderError as RendererRenderError


class TestTaxonomy:
    """Error classes and their base."""

    @pytest.mark.parametrize(
        "name",
        [
            "ValidationError",
            "AdmissionError",
            "StoreError",
            "JobExecutionFailure",
            "JobNotFoundError",
            "LockLostError",
            "RateLimitedError",
            "ClientDisconnectedError",
        ],
    )
    def test_generator_errors_share_base(self, name):
        assert issubclass(getattr(errors, name), errors.PdfGeneratorError)

    def test_render_error_is_reexported_from_renderer(self):
        assert errors.RenderError is RendererRenderError
        assert not issubclass(errors.RenderError, errors.PdfGeneratorError)

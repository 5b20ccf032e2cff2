"""
API dependencies
"""
from fastapi import Request

from bookstack.services.pipeline import IntakePipeline


def get_pipeline(request: Request) -> IntakePipeline:
    """Pipeline built by the app lifespan"""
    return request.app.state.pipeline

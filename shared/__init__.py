"""
Shared components for the product photo batch engine
"""

from .workflow import *

__all__ = ["CreateWorkflowRequest", "UpdateWorkflowRequest", "WorkflowIdRequest", "ProcessItemRequest",
           "WorkflowItemInput", "GlobalPromptMode", "SpecificPromptMode", "PromptMode", "prompt_mode_adapter",
           "ProductAnalysis", "GeneratedImageResult", "BatchSummary", "ItemResult", "RetryFailedResult", "HealthResponse"]

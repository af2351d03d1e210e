"""Pre-built workflow templates."""

import copy
import uuid
from typing import Any, Dict, List, Optional

from .models.core import Workflow, WorkflowSummary, now_ms


def _node(node_id: str, node_type: str, x: float, **data: Any) -> Dict[str, Any]:
    return {"id": node_id, "type": node_type, "position": {"x": x, "y": 100}, "data": data}


def _chain(*node_ids: str) -> List[Dict[str, Any]]:
    return [
        {"id": f"conn-{index}", "source": source, "target": target}
        for index, (source, target) in enumerate(zip(node_ids, node_ids[1:]), start=1)
    ]


WORKFLOW_TEMPLATES: Dict[str, Dict[str, Any]] = {
    "asset-gen": {
        "name": "Asset Generation Pipeline",
        "nodes": [
            _node("prompt-1", "input_text", 100, label="Prompt", prompt="Create a sci-fi robot character"),
            _node("ai-image-1", "process_ai_image", 300, label="Generate image", model="imagen", aspectRatio="1:1"),
            _node("upscale-1", "transform_upscale", 500, label="Upscale"),
            _node("save-1", "output_save", 700, label="Save asset", format="png"),
        ],
        "edges": _chain("prompt-1", "ai-image-1", "upscale-1", "save-1"),
    },
    "code-gen": {
        "name": "Code Generation Pipeline",
        "nodes": [
            _node("prompt-1", "input_text", 100, label="Prompt", prompt="Create a React counter component"),
            _node("ai-code-1", "process_code", 300, label="Generate code", format="tsx"),
            _node("download-1", "output_download", 500, label="Download", format="tsx"),
        ],
        "edges": _chain("prompt-1", "ai-code-1", "download-1"),
    },
}


def list_templates() -> List[WorkflowSummary]:
    """Summaries of the available templates, ordered by name."""
    return [
        WorkflowSummary(
            id=name,
            name=template["name"],
            node_count=len(template["nodes"]),
            edge_count=len(template["edges"]),
            created_at=0,
            updated_at=0,
        )
        for name, template in sorted(WORKFLOW_TEMPLATES.items())
    ]


def instantiate_template(name: str, workflow_id: Optional[str] = None,
                         workflow_name: Optional[str] = None) -> Workflow:
    """
    Build a fresh workflow from a template.

    Raises:
        KeyError: if no template has the given name
    """
    if name not in WORKFLOW_TEMPLATES:
        raise KeyError(f"Unknown template '{name}'. Available: {', '.join(sorted(WORKFLOW_TEMPLATES))}")
    template = copy.deepcopy(WORKFLOW_TEMPLATES[name])
    stamp = now_ms()
    return Workflow.model_validate({
        "id": workflow_id or f"{name}-{uuid.uuid4().hex[:8]}",
        "name": workflow_name or template["name"],
        "nodes": template["nodes"],
        "edges": template["edges"],
        "createdAt": stamp,
        "updatedAt": stamp,
    })

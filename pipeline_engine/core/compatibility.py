"""Which node types may feed which.

Pairs not listed are denied; a new node type needs an explicit entry here.
"""

from typing import Dict, FrozenSet, Tuple

from ..models.core import NodeType

_OUTPUTS = (NodeType.OUTPUT_SAVE, NodeType.OUTPUT_DOWNLOAD)

_ALLOWED_CONSUMERS: Dict[NodeType, Tuple[NodeType, ...]] = {
    NodeType.INPUT_TEXT: (
        NodeType.PROCESS_AI_IMAGE,
        NodeType.PROCESS_AI_VIDEO,
        NodeType.PROCESS_AI_AUDIO,
        NodeType.PROCESS_CODE,
        *_OUTPUTS,
    ),
    NodeType.INPUT_MEDIA: (
        NodeType.PROCESS_AI_IMAGE,
        NodeType.PROCESS_AI_VIDEO,
        NodeType.TRANSFORM_UPSCALE,
        NodeType.TRANSFORM_REMOVE_BG,
        *_OUTPUTS,
    ),
    NodeType.PROCESS_AI_IMAGE: (
        NodeType.PROCESS_AI_VIDEO,
        NodeType.TRANSFORM_UPSCALE,
        NodeType.TRANSFORM_REMOVE_BG,
        *_OUTPUTS,
    ),
    NodeType.PROCESS_AI_VIDEO: (
        NodeType.TRANSFORM_UPSCALE,
        *_OUTPUTS,
    ),
    NodeType.PROCESS_AI_AUDIO: (
        NodeType.PROCESS_AI_VIDEO,
        *_OUTPUTS,
    ),
    NodeType.PROCESS_CODE: _OUTPUTS,
    NodeType.TRANSFORM_UPSCALE: (
        NodeType.PROCESS_AI_VIDEO,
        NodeType.TRANSFORM_REMOVE_BG,
        *_OUTPUTS,
    ),
    NodeType.TRANSFORM_REMOVE_BG: (
        NodeType.PROCESS_AI_VIDEO,
        NodeType.TRANSFORM_UPSCALE,
        *_OUTPUTS,
    ),
}

COMPATIBILITY: FrozenSet[Tuple[NodeType, NodeType]] = frozenset(
    (producer, consumer)
    for producer, consumers in _ALLOWED_CONSUMERS.items()
    for consumer in consumers
)


def is_compatible(producer: str, consumer: str) -> bool:
    """True if a node of type producer may feed a node of type consumer."""
    producer_type = NodeType.parse(producer)
    consumer_type = NodeType.parse(consumer)
    if producer_type is None or consumer_type is None:
        return False
    return (producer_type, consumer_type) in COMPATIBILITY

# rule_scheduler/services/task_profiles.py
"""Static resource profiles per task type, with ``default`` as the fallback"""

from typing import Dict, List, Optional

from rule_scheduler.models.schemas import ResourceRequirements, SchedulingRule

UNKNOWN_TASK_TYPE = "unknown"

CPU_USAGE: Dict[str, float] = {
    "media_transcode": 80,
    "video_process": 70,
    "audio_analyze": 50,
    "transcribe": 60,
    "download": 20,
    "organize": 10,
    "backup": 30,
    "default": 25,
}

MEMORY_USAGE_MB: Dict[str, float] = {
    "media_transcode": 2048,
    "video_process": 1536,
    "audio_analyze": 512,
    "transcribe": 1024,
    "download": 256,
    "organize": 128,
    "backup": 512,
    "default": 256,
}

DISK_USAGE_MB: Dict[str, float] = {
    "media_transcode": 5120,
    "video_process": 3072,
    "audio_analyze": 512,
    "transcribe": 1024,
    "download": 2048,
    "organize": 0,
    "backup": 1024,
    "default": 512,
}

NETWORK_USAGE_MBPS: Dict[str, float] = {
    "download": 100,
    "backup": 50,
    "sync": 75,
    "upload": 80,
    "default": 10,
}

DEPENDENCIES: Dict[str, List[str]] = {
    "media_transcode": ["ffmpeg", "storage_space"],
    "video_process": ["ffmpeg", "opencv"],
    "audio_analyze": ["ffmpeg", "whisper"],
    "transcribe": ["whisper", "storage_space"],
    "download": ["network", "storage_space"],
    "organize": ["storage_space"],
    "backup": ["storage_space", "network"],
    "default": [],
}

# Checked in order; first keyword found wins
TASK_TYPE_KEYWORDS = (
    (("backup",), "backup"),
    (("transcode", "convert"), "media_transcode"),
    (("download",), "download"),
    (("organize",), "organize"),
    (("transcribe",), "transcribe"),
    (("analyze",), "audio_analyze"),
)

RESOURCE_INTENSIVE_KEYWORDS = ("transcode", "process", "analyze", "backup")


def _rule_text(rule: SchedulingRule) -> str:
    return f"{rule.rule_name} {rule.description or ''}".lower()


def extract_task_type(text: str) -> str:
    lowered = text.lower()
    for keywords, task_type in TASK_TYPE_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return task_type
    return UNKNOWN_TASK_TYPE


def task_type_for_rule(rule: SchedulingRule) -> str:
    return rule.task_type or extract_task_type(_rule_text(rule))


def is_resource_intensive(rule: SchedulingRule) -> bool:
    text = _rule_text(rule)
    return any(keyword in text for keyword in RESOURCE_INTENSIVE_KEYWORDS)


def build_requirements(task_type: str, duration_minutes: Optional[float],
                       default_duration: float = 15.0) -> ResourceRequirements:
    return ResourceRequirements(
        estimated_duration=duration_minutes if duration_minutes is not None else default_duration,
        cpu_usage=CPU_USAGE.get(task_type, CPU_USAGE["default"]),
        memory_usage=MEMORY_USAGE_MB.get(task_type, MEMORY_USAGE_MB["default"]),
        disk_usage=DISK_USAGE_MB.get(task_type, DISK_USAGE_MB["default"]),
        network_usage=NETWORK_USAGE_MBPS.get(task_type, NETWORK_USAGE_MBPS["default"]),
        dependencies=list(DEPENDENCIES.get(task_type, DEPENDENCIES["default"])),
    )

"""角色与用户人设"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Optional, Dict, Any

from .memory.models import new_id


ProfileInputMode = Literal["field", "free"]


@dataclass
class CharacterFieldProfile:
    name: str
    personality: str = ""
    speech_style: str = ""
    relationship: str = ""
    world_setting: str = ""
    additional_info: Optional[str] = None


@dataclass
class Character:
    """AI 扮演的角色；字段模式或自由文本模式二选一"""
    id: str = field(default_factory=new_id)
    input_mode: ProfileInputMode = "field"
    field_profile: Optional[CharacterFieldProfile] = None
    free_profile: Optional[str] = None
    free_profile_name: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def name(self) -> str:
        if self.input_mode == "field" and self.field_profile:
            return self.field_profile.name
        return self.free_profile_name or "캐릭터"

    def describe(self, include_extra: bool = True) -> str:
        """生成提示词中的角色信息段"""
        if self.input_mode == "field" and self.field_profile:
            p = self.field_profile
            lines = [
                f"Name: {p.name}",
                f"Personality: {p.personality}",
                f"Speech style: {p.speech_style}",
                f"Relationship: {p.relationship}",
                f"World setting: {p.world_setting}",
            ]
            if include_extra and p.additional_info:
                lines.append(f"Additional info: {p.additional_info}")
            return "\n".join(lines)
        return self.free_profile or ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Character":
        profile = data.get("field_profile")
        return cls(
            id=data.get("id") or new_id(),
            input_mode=data.get("input_mode", "field"),
            field_profile=CharacterFieldProfile(**profile) if profile else None,
            free_profile=data.get("free_profile"),
            free_profile_name=data.get("free_profile_name"),
        )


@dataclass
class UserFieldProfile:
    name: str
    personality: str = ""
    appearance: str = ""
    settings: str = ""
    additional_info: Optional[str] = None


@dataclass
class UserProfile:
    """用户人设"""
    id: str = field(default_factory=new_id)
    input_mode: ProfileInputMode = "field"
    field_profile: Optional[UserFieldProfile] = None
    free_profile: Optional[str] = None
    free_profile_name: Optional[str] = None

    @property
    def name(self) -> str:
        if self.input_mode == "field" and self.field_profile:
            return self.field_profile.name
        if self.free_profile_name:
            return self.free_profile_name
        return "유저"

    def describe(self, include_extra: bool = True) -> str:
        if self.input_mode == "field" and self.field_profile:
            u = self.field_profile
            lines = [
                f"Name: {u.name}",
                f"Personality: {u.personality}",
                f"Appearance: {u.appearance}",
                f"Settings: {u.settings}",
            ]
            if include_extra and u.additional_info:
                lines.append(f"Additional info: {u.additional_info}")
            return "\n".join(lines)
        return self.free_profile or ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserProfile":
        profile = data.get("field_profile")
        return cls(
            id=data.get("id") or new_id(),
            input_mode=data.get("input_mode", "field"),
            field_profile=UserFieldProfile(**profile) if profile else None,
            free_profile=data.get("free_profile"),
            free_profile_name=data.get("free_profile_name"),
        )

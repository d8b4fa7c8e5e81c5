"""
Directive registry.

Directives are ``@NAME`` tags in user text (``@SPOT``, ``@FX``...) that steer
generation towards a market or data set. The client only keeps the list and
finds tags in text; the icon is carried as a name for the presentation layer.
"""

import re
from typing import List, Optional

from pydantic import BaseModel, Field

from services.qconnect.ids import new_message_id

DIRECTIVE_PATTERN = re.compile(r"@([A-Z]+)")
DEFAULT_ICON = "Hash"


class Directive(BaseModel):
    id: str = Field(default_factory=lambda: new_message_id("directive"))
    name: str
    description: str = ""
    icon: str = DEFAULT_ICON


DEFAULT_DIRECTIVES = [
    Directive(id="1", name="SPOT", description="Spot market trading data", icon="CircleDollarSign"),
    Directive(id="2", name="STIRT", description="Short-term interest rate trading data", icon="TrendingUp"),
    Directive(id="3", name="TITAN", description="Titan trading platform data", icon="BarChart"),
    Directive(id="4", name="FX", description="Foreign exchange market data", icon="Repeat"),
    Directive(id="5", name="BONDS", description="Bond market trading data", icon="Landmark"),
]


class DirectiveRegistry:
    def __init__(self, directives: Optional[List[Directive]] = None):
        source = DEFAULT_DIRECTIVES if directives is None else directives
        self._directives: List[Directive] = [d.model_copy() for d in source]

    @property
    def directives(self) -> List[Directive]:
        return list(self._directives)

    def get(self, name: str) -> Optional[Directive]:
        name = name.lstrip("@").upper()
        return next((d for d in self._directives if d.name == name), None)

    def add(self, name: str, description: str, icon: str = DEFAULT_ICON) -> Directive:
        directive = Directive(name=name.lstrip("@").upper(), description=description, icon=icon)
        self._directives.append(directive)
        return directive

    def remove(self, directive_id: str) -> bool:
        before = len(self._directives)
        self._directives = [d for d in self._directives if d.id != directive_id]
        return len(self._directives) != before

    def icon_for(self, name: str) -> str:
        directive = self.get(name)
        return directive.icon if directive else DEFAULT_ICON

    @staticmethod
    def extract(text: str) -> List[str]:
        """Directive names tagged in ``text``, in order of appearance."""
        return DIRECTIVE_PATTERN.findall(text or "")

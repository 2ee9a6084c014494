"""Paper-cut style presets and prompt construction."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from kirie.errors import ConfigurationError

FILLER_TEXT = "beautiful scene"
BASELINE_STYLE = "traditional"


@dataclass(frozen=True, slots=True)
class StyleConfig:
    """A named look: which provider renders it and how the prompt is dressed."""

    id: str
    display_name: str
    provider: str
    template: str

    def render(self, text: str) -> str:
        # Only {text} is a field; any other braces are literal prompt text.
        return self.template.replace("{text}", text)


def build_prompt(user_text: str | None, style: StyleConfig) -> str:
    """Return the finished provider prompt for ``user_text`` in ``style``."""
    text = (user_text or "").strip() or FILLER_TEXT
    return style.render(text)


DEFAULT_STYLES: tuple[StyleConfig, ...] = (
    StyleConfig(
        id="traditional",
        display_name="伝統切り絵",
        provider="nanobanana",
        template=(
            "Traditional Japanese kirigami paper cutting art: {text}. Intricate hand-cut paper craft, "
            "delicate lace-like patterns, multiple layers of colored washi paper, traditional motifs "
            "(sakura, crane, wave), precise blade work, museum quality craftsmanship, soft natural lighting, "
            "cultural heritage aesthetic, masterpiece, 8K ultra detailed"
        ),
    ),
    StyleConfig(
        id="shadow",
        display_name="影絵シアター",
        provider="flux",
        template=(
            "Shadow puppet theater paper art: {text}. Dramatic silhouette cutting, theatrical lighting from "
            "behind, storytelling composition, Indonesian wayang style influence, single layer black paper on "
            "illuminated white background, dancing shadows, elegant flowing curves, mystical atmosphere, "
            "cinematic quality, 8K resolution"
        ),
    ),
    StyleConfig(
        id="diorama",
        display_name="立体ジオラマ",
        provider="flux",
        template=(
            "3D paper art shadow box diorama: {text}. Multiple depth layers (5-7 layers), volumetric paper "
            "sculpture, distinct foreground/middleground/background separation, dramatic side lighting "
            "creating depth, paper relief technique, miniature scene construction, tilt-shift photography "
            "effect, ultra realistic paper texture, 8K resolution"
        ),
    ),
    StyleConfig(
        id="modern",
        display_name="カラフルモダン",
        provider="turbo",
        template=(
            "Modern colorful paper cut art: {text}. Vibrant gradient papers, contemporary pop art aesthetic, "
            "bold geometric shapes, rainbow color palette, overlapping translucent layers, playful "
            "composition, Matisse cutout style, bright cheerful mood, 8K sharp details"
        ),
    ),
    StyleConfig(
        id="zen",
        display_name="ミニマル禅",
        provider="turbo",
        template=(
            "Minimalist zen paper cutting: {text}. Single continuous line cutting, extreme simplicity, "
            "negative space mastery, monochromatic (black on white or white on black), meditative "
            "composition, elegant restraint, Japanese ma concept, clean razor-sharp edges, 8K precision"
        ),
    ),
    StyleConfig(
        id="fantasy",
        display_name="幻想ファンタジー",
        provider="nanobanana",
        template=(
            "Fantasy fairytale paper art: {text}. Magical storybook illustration style, whimsical characters "
            "and creatures, layered paper with backlight glow effect, dreamy pastel colors, Lotte Reiniger "
            "animation influence, ethereal atmosphere, intricate decorative borders, 8K enchanting details"
        ),
    ),
    StyleConfig(
        id="nouveau",
        display_name="アールヌーヴォー",
        provider="nanobanana",
        template=(
            "Art Nouveau paper cutting: {text}. Organic flowing curves, botanical and floral motifs, elegant "
            "decorative borders, Alphonse Mucha influence, symmetrical composition, vintage poster aesthetic, "
            "gold and jewel tone colors, sophisticated craftsmanship, 8K ornate details"
        ),
    ),
    StyleConfig(
        id="street",
        display_name="ストリートアート",
        provider="flux",
        template=(
            "Street art paper cutting graffiti: {text}. Urban contemporary aesthetic, stencil art technique, "
            "bold high contrast, spray paint texture simulation, layered paper collage, raw edge finishing, "
            "underground culture, 8K edgy details"
        ),
    ),
    StyleConfig(
        id="ultimate_kirie",
        display_name="究極切り絵",
        provider="gemini",
        template=(
            "{text}, masterpiece, traditional japanese kirie paper cut style, intricate details, "
            "black paper on white background, layered washi texture, crisp blade-cut edges"
        ),
    ),
)


class StyleRegistry:
    """In-memory registry of styles with a fixed baseline."""

    def __init__(self, styles: list[StyleConfig] | None = None, baseline: str = BASELINE_STYLE) -> None:
        self._styles: dict[str, StyleConfig] = {}
        self.baseline = baseline
        for style in DEFAULT_STYLES if styles is None else styles:
            self.add(style)

    def add(self, style: StyleConfig) -> None:
        """Register or replace a style."""
        self._styles[style.id] = style

    def load_from_file(self, path: Path) -> None:
        """Merge styles from a JSON list of ``{id, name, ai, prompt}`` objects."""
        if not path.exists():
            raise ConfigurationError(f"Styles file not found: {path}")
        with path.open("r", encoding="utf-8") as fp:
            data = json.load(fp)
        for entry in data:
            try:
                style = StyleConfig(
                    id=entry["id"],
                    display_name=entry.get("name", entry["id"]),
                    provider=entry["ai"],
                    template=entry["prompt"],
                )
            except KeyError as exc:
                raise ConfigurationError(f"Style entry is missing {exc} in {path}") from exc
            if "{text}" not in style.template:
                raise ConfigurationError(f"Style '{style.id}' template has no {{text}} placeholder")
            self.add(style)

    def list_styles(self) -> list[StyleConfig]:
        return list(self._styles.values())

    def resolve(self, style_id: str | None) -> StyleConfig:
        """Return the style for ``style_id``, or the baseline for unknown ids."""
        key = (style_id or "").strip()
        style = self._styles.get(key) or self._styles.get(key.lower())
        if style is not None:
            return style
        try:
            return self._styles[self.baseline]
        except KeyError as exc:
            raise ConfigurationError(f"Baseline style '{self.baseline}' is not registered") from exc

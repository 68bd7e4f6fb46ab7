"""
Application-wide constants to replace magic numbers and strings.
"""
# ── Moderation models ──
MODEL_OMNI = "omni-moderation-latest"
MODEL_GPT4O = "gpt-4o"
MODEL_O4_MINI = "o4-mini"

# Display levels shown to creators, stored by older clients in place of the model name
MODEL_DISPLAY_LEVELS = {
    "Level 1": MODEL_OMNI,
    "Level 2": MODEL_O4_MINI,
    "Level 3": MODEL_GPT4O,
}

# ── Category vocabulary (OpenAI moderation names) ──
CATEGORY_NAMES = (
    "harassment",
    "harassment/threatening",
    "sexual",
    "sexual/minors",
    "hate",
    "hate/threatening",
    "violence",
    "violence/graphic",
    "illicit",
    "illicit/violent",
    "self-harm",
    "self-harm/intent",
    "self-harm/instructions",
)

# Keys that providers put next to scores but that are not categories
RESERVED_SCORE_KEYS = frozenset({"reason", "flagged"})

# ── Age rating thresholds ──
# Escalation threshold per tier (EVERYONE, TEEN, MATURE, ADULT)
AGE_RATING_THRESHOLDS = (0.10, 0.20, 0.50, None)
AGE_RATING_LABELS = ("All", "13+", "16+", "18+")
AGE_RATING_CODES = ("ALL", "13_PLUS", "16_PLUS", "18_PLUS")

# Report severity bands, as multiples of the rating's pass ceiling
SEVERITY_ELEVATED = "elevated"
SEVERITY_HIGH = "high"
SEVERITY_SEVERE = "severe"
SEVERITY_OK = "ok"

# ── Book content ──
BOOK_TYPE_MANGA = "manga"

UNIT_TITLE = "title"
UNIT_DESCRIPTION = "description"
UNIT_COVER_IMAGE = "coverImage"
UNIT_CHAPTER = "chapter"

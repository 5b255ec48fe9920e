"""Static metadata describing StudySphere."""

APP_NAME = "StudySphere"
APP_VERSION = "0.1"
APP_LICENSE = "MIT License"
APP_ABOUT_TEXT = (
    "StudySphere is an exam-preparation companion. Students read subject passages, "
    "take timed multiple-choice quizzes and track their progress; admins author passages "
    "and review aggregate statistics."
)

BULK_PASTE_HELP_TEXT = (
    "Paste questions in the following format. Mark the correct option with '*'.\n\n"
    "Question: What organelle produces ATP?\n"
    "A) Nucleus\nB) Mitochondria*\nC) Ribosome\nD) Golgi apparatus\n\n"
    "Question: Which gas do plants absorb?\n"
    "A) Oxygen\nB) Nitrogen\nC) Carbon dioxide*\nD) Helium"
)

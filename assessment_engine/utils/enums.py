import enum


class QuestionType(str, enum.Enum):
    multiple_choice = "Multiple Choice"
    true_false = "True or False"
    short_answer = "Short Answer"
    fill_in_blank = "Fill in the Blanks"
    matching = "Matching"
    file_submission = "File Submission"


class SessionState(str, enum.Enum):
    not_started = "not_started"
    awaiting_choice = "awaiting_choice"
    in_progress = "in_progress"
    viewing_results = "viewing_results"


class ChangeEvent(str, enum.Enum):
    insert = "INSERT"
    update = "UPDATE"

"""Constants for tool names, planner endpoints and spreadsheet values."""

# Planner backend
PLANNER_CHAT_PATH = "/agent/chat"
USER_AGENT = "sheet-agent/0.1"

# Sheet tool names
READ_RANGE = "excel_read_range"
READ_SELECTION = "excel_read_selection"
WRITE_RANGE = "excel_write_range"
SET_FORMULA = "excel_set_formula"
FILL_FORMULA = "excel_fill_formula"
CLEAR_RANGE = "excel_clear_range"
DELETE_ROWS = "excel_delete_rows"
CREATE_SHEET = "excel_create_sheet"
DELETE_SHEET = "excel_delete_sheet"
RESTORE_RANGE = "excel_restore_range"

# Spreadsheet error values
ERROR_VALUES = (
    "#VALUE!",
    "#REF!",
    "#NAME?",
    "#DIV/0!",
    "#NULL!",
    "#N/A",
    "#NUM!",
    "#SPILL!",
    "#CALC!",
)

# Output truncation
MAX_OBSERVATION_CHARS = 2000

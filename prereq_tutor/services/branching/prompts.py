CONFUSION_PHRASES: list[str] = [
    "i don't know",
    "i'm not sure",
    "i'm stuck",
    "i don't understand",
    "i'm confused",
    "no idea",
    "help",
    "what is",
    "how do i",
    "can you explain",
]

# {skill} is the lowercased skill name, {reason} the selection reason
BRANCH_MESSAGE_TEMPLATES: list[str] = [
    "I notice {skill} might need some practice. Would you like to work on that first? {reason}",
    "Let's build a strong foundation with {skill}. {reason} Ready to practice?",
    "I think practicing {skill} would help here. {reason} Shall we try a few problems?",
    "Before we continue, let's strengthen your {skill} skills. {reason}",
]

ALTERNATIVE_HELP_TEMPLATE = (
    "I see {skill} is challenging. Since we've already practiced several skills, "
    "let me try explaining it differently or we can work through it together "
    "step by step. Which would you prefer?"
)

EXPLANATIONS = {
    "explicit_confusion": "Student explicitly indicated confusion or lack of understanding",
    "consistent_struggle": "Student has made {attempts} incorrect attempts, indicating difficulty",
    "weak_prerequisites": "Student has weak proficiency in {count} prerequisite skills",
    "no_proficiency": "Student has no recorded proficiency in required prerequisites",
    "no_branch": (
        "Student shows sufficient understanding or has not struggled enough "
        "to warrant branching"
    ),
    "error": "Branch analysis failed; staying on the current problem",
}

SELECTION_REASONS = {
    "unknown": "No prior practice with this skill",
    "learning": "Currently learning ({success}/{solved} correct)",
    "base_skill": "Base skill with no prerequisites",
    "default": "This skill needs practice",
}

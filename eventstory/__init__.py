"""
EventStory: Structured Event Narratives from Language Model Output

EventStory turns the unreliable JSON-ish output of language models into
validated checklist extractions and event narratives. It repairs malformed
responses in stages, checks every extracted value against the checklist's
field schema, and salvages the narrative when nothing else can be recovered.
"""

# Package metadata
__version__ = "1.0.0"

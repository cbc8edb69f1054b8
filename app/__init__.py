"""
EventStory Command-Line Application

Package Structure:
- cli.py: `eventstory` console script (parse, validate, evaluate)
"""

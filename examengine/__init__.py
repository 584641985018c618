"""
IELTS Exam Engine - Test Session & Scoring Package

This package contains the core components for running and scoring timed tests:
- session: Session lifecycle (start/resume, answers, autosave, submission)
- answer_store / clock: In-memory answers and the session countdown
- grader: Automatic grading of objective question types
- rubric: Reviewer grading of writing and speaking
- content / store: Question bank and session/result persistence collaborators
"""

__version__ = "1.0.0"

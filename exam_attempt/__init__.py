"""
Exam attempt core: timed, resumable quiz sessions with autosave, integrity
tracking, partial-credit scoring and guarded submission.
"""

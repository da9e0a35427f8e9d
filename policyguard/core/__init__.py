"""PolicyGuard core document processing components.

This package contains the threat and PII scanners, redaction, stage
tracking, the default collaborator implementations (text extraction,
framework mapping, gap analysis, redlining, artifact generation) and the
processing pipeline orchestrator that sequences them.
"""

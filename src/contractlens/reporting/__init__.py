"""Audience-tiered report views over one Finding set."""

from .report_generator import ReportGenerator, ReportViews

__all__ = ['ReportGenerator', 'ReportViews']

"""
Pure helpers shared by services and jobs
"""

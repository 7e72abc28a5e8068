"""
Posts: the application's CRUD resource (JSON API + server-rendered pages).
"""

"""
Clinic booking backend.

Layout:
- db.py       : SQLAlchemy engine, sessions and configuration
- models.py   : ORM tables, enums and appointment lifecycle
- errors.py   : domain errors, IntegrityError translation
- services.py : client operations (booking, prescriptions, billing, queries)
- schema.py   : CREATE TABLE export per SQL dialect
- seed.py     : reference data (specializations, medications, rooms, insurers)
- cli.py      : command line
- api_main.py : HTTP API (FastAPI)
- tools/      : maintenance scripts (integrity audit)
"""

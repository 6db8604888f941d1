"""
Shared foundation of the search-query sync engine.

Nothing is imported here; import from the submodules so that loading
``core.config`` never drags in the database engine:

    core.config      Settings read from the environment / .env
    core.database    Database: engine, sessions, dialect-aware upsert
    core.exceptions  SyncException tree, each error tagged with an ErrorCategory
    core.logging     setup_logging(settings)
    core.result      Outcome and capture() for explicit success/failure values
    core.timeutils   utcnow() and watermark formatting/parsing

Typical startup (see scripts/init_db.py):

    setup_logging(settings)
    database = Database.from_settings(settings)
    await database.create_all()
"""

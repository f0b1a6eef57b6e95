from mls_replicator.main import app

app()

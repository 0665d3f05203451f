import os

# before flask_app is imported, since it connects to the database at import time
os.environ['DATABASE_URL'] = 'sqlite://'

from app import create_app

# ----------------------
# Create app instance
# ----------------------
app = create_app()

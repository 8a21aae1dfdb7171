from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from database import init_db
from logging_config import setup_logging
from routes import router

setup_logging()

app = FastAPI(
    title="Messaging Service API",
    description="Client/freelancer conversations and project lifecycle messaging",
    version="1.0.0"
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, specify frontend origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.on_event("startup")
async def startup_event():
    init_db()


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "messaging-service"}

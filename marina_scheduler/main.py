import uvicorn
#entry point to run the scheduling API
if __name__ == "__main__":
    uvicorn.run(
        "marina_scheduler.webapp:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=True,
    )

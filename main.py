import modal

# Modal setup
app = modal.App("image-upscaler")

REALESRGAN_URL = (
    "https://github.com/xinntao/Real-ESRGAN/releases/download/v0.2.5.0/"
    "realesrgan-ncnn-vulkan-20220424-ubuntu.zip"
)
REALESRGAN_DIR = "/opt/realesrgan"

# Web image bundling the ncnn-vulkan binary and its models
image = (
    modal.Image.debian_slim(python_version="3.11")
    .apt_install([
        # Vulkan runtime for realesrgan-ncnn-vulkan
        "libvulkan1",
        "mesa-vulkan-drivers",
        "libgomp1",
        "wget",
        "unzip",
    ])
    .run_commands([
        f"mkdir -p {REALESRGAN_DIR}",
        f"wget -q -O /tmp/realesrgan.zip {REALESRGAN_URL}",
        f"unzip -o /tmp/realesrgan.zip -d {REALESRGAN_DIR}",
        f"chmod +x {REALESRGAN_DIR}/realesrgan-ncnn-vulkan",
        "rm /tmp/realesrgan.zip",
    ])
    .pip_install([
        "fastapi==0.115.12",
        "pydantic==2.11.3",
        "pydantic-settings==2.9.1",
        "python-multipart==0.0.20",
        "anyio==4.9.0",
    ])
    .env({
        "UPSCALER_EXECUTABLE_PATH": f"{REALESRGAN_DIR}/realesrgan-ncnn-vulkan",
        "UPSCALER_MODELS_DIR": f"{REALESRGAN_DIR}/models",
        "UPSCALER_UPLOAD_DIR": "/tmp/upscaler/uploads",
        "UPSCALER_OUTPUT_DIR": "/tmp/upscaler/outputs",
    })
    .add_local_python_source("core", "utils")
)


# Each container keeps its own transient directories and cleanup task
@app.function(
    image=image,
    gpu="T4",  # Options: "T4" (14GB), "A10G" (24GB), "A100" (40GB)
    timeout=600,
    memory=2048,
    max_containers=4,  # Limit concurrent GPU instances
)
@modal.concurrent(max_inputs=8)
@modal.asgi_app()
def fastapi_app():
    from core.api import create_app

    return create_app()


if __name__ == "__main__":
    # Local run: python main.py (expects realesrgan-ncnn-vulkan next to this file)
    import uvicorn

    from core.config import Settings

    settings = Settings()
    uvicorn.run("core.api:create_app", factory=True, host=settings.host, port=settings.port)

import asyncio

from graph_server import GraphServer
from graph_media_client.errors import GraphClientError, user_message
from graph_media_client.graph_media_client import GraphMediaClient
from graph_media_client.models import AttemptRecord, ClientConfig, ReelUploadConfig


async def on_attempt(record: AttemptRecord):
    if record.result is None:
        print(f"-> {record.target} (attempt {record.attempt})")
    else:
        print(f"<- {record.target}: {record.result}")


async def main():
    PORT = 8000
    server = GraphServer(
        scripts={"uploading_phase": ["in_progress", "in_progress", "complete"]}
    )
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = ClientConfig(
        graph_url=f"http://localhost:{PORT}/",
        video_url=f"http://localhost:{PORT}/",
        retry_count=2,
    )
    upload = ReelUploadConfig(
        uploading_interval=0.5,
        copyright_interval=0.5,
        processing_interval=0.5,
        publishing_interval=0.5,
        deadline=60.0,
    )

    async with GraphMediaClient(config, observe=on_attempt) as client:
        try:
            result = await client.post_video_reel(
                "page-token",
                "1234567890",
                "Reel posted from the example",
                file_url="https://cdn.example.com/reel.mp4",
                upload=upload,
            )
            print(f"Published reel: {result['post_id']}")
        except GraphClientError as e:
            print(f"Upload failed: {e}")
            print(user_message(e) or "(no message for the user)")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())

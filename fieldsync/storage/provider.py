from typing import BinaryIO, Optional, Union


class AttachmentStore:
    """Where attachment bytes live on the device until they are uploaded."""

    def save(self, key: str, data: Union[bytes, BinaryIO]) -> str:
        raise NotImplementedError

    def read_bytes(self, key: str) -> Optional[bytes]:
        raise NotImplementedError

    def read_base64(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

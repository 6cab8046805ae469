from io import DEFAULT_BUFFER_SIZE, RawIOBase, UnsupportedOperation
from typing import Callable, IO, List


def clamp(value, min, max):
    return sorted((min, value, max))[1]


class Tee(RawIOBase):
    """
    Copies everything read from `reader` into `writer`.

    `on_complete` is called once, when a read returns EOF. A body that is never read to the end never completes.
    """

    def __init__(self, reader: IO[bytes], writer: IO[bytes], on_complete: Callable[[], None]) -> None:
        super().__init__()
        self.__reader = reader
        self.__writer = writer
        self.__on_complete = on_complete
        self.__completed = False

    def _write_chunk(self, chunk: bytes) -> bytes:
        self.__writer.write(chunk)
        if not chunk and not self.__completed:
            # Indicates EOF was reached in the reader.
            self.__completed = True
            self.__on_complete()
        return chunk

    # region IOBase methods

    def close(self) -> None:
        if self.closed:
            return
        super().close()
        self.__reader.close()
        self.__writer.close()

    def release_conn(self) -> None:
        # `requests` releases pooled connections through the raw body.
        release_conn = getattr(self.__reader, 'release_conn', None)
        if release_conn is not None:
            release_conn()

    @property
    def closed(self) -> bool:
        return self.__reader.closed or self.__writer.closed

    def fileno(self) -> int:
        raise OSError()

    def flush(self) -> None:
        self.__writer.flush()

    def isatty(self) -> bool:
        return False

    def readable(self) -> bool:
        return True

    def readline(self, size=-1) -> bytes:
        return self._write_chunk(self.__reader.readline(size))

    def readlines(self, hint=-1) -> List[bytes]:
        lines = self.__reader.readlines(hint)
        for line in lines:
            self._write_chunk(line)
        self._write_chunk(b'')
        return lines

    def seekable(self) -> bool:
        return False

    # endregion

    # region RawIOBase methods

    def read(self, size=-1):
        return self._write_chunk(self.__reader.read(size))

    def readall(self):
        chunks = []
        while True:
            chunk = self.read(DEFAULT_BUFFER_SIZE)
            if not chunk:
                break
            chunks.append(chunk)
        return b''.join(chunks)

    def readinto(self, buffer):
        # Just because I don't feel like figuring how to tee these.
        raise UnsupportedOperation()

    def write(self, b):
        raise UnsupportedOperation()

    # endregion

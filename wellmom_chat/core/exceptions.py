"""Custom exceptions untuk klien chat WellMom."""

from typing import Optional


class ChatException(Exception):
    """Base exception untuk semua kegagalan sinkronisasi chat."""

    default_detail = "Terjadi kesalahan pada layanan chat."
    retryable = False

    def __init__(self, detail: Optional[str] = None, status_code: Optional[int] = None):
        self.detail = detail or self.default_detail
        self.status_code = status_code
        # Filled in by the cache when an optimistic send is rolled back
        self.failed_text: Optional[str] = None
        self.client_token: Optional[str] = None
        super().__init__(self.detail)


class TransportError(ChatException):
    """
    Exception ketika server tidak dapat dihubungi (network, timeout, 5xx).

    Boleh dicoba ulang oleh pemanggil; klien tidak pernah mencoba ulang
    secara otomatis.
    """

    default_detail = "Tidak dapat terhubung ke server. Periksa koneksi Anda lalu coba lagi."
    retryable = True


class InvalidResponseError(TransportError):
    """Exception ketika response server tidak sesuai format yang diharapkan."""

    default_detail = "Response server tidak valid."


class RejectionError(ChatException):
    """
    Exception ketika server menolak permintaan (4xx).

    Tidak boleh dicoba ulang; pesan `detail` ditampilkan ke pengguna.
    """

    default_detail = "Permintaan ditolak oleh server."


class NotAuthorizedError(RejectionError):
    """Exception ketika token tidak ada atau tidak memiliki akses."""

    default_detail = "Anda tidak memiliki akses ke conversation ini."


class NotFoundError(RejectionError):
    """Exception ketika resource tidak ditemukan di server atau cache."""

    default_detail = "Conversation tidak ditemukan."

    def __init__(self, detail: Optional[str] = None, status_code: Optional[int] = 404):
        super().__init__(detail, status_code)


class InvalidMessageError(RejectionError):
    """Exception ketika teks pesan kosong atau terlalu panjang."""

    default_detail = "Pesan tidak boleh kosong."

    def __init__(self, detail: Optional[str] = None, status_code: Optional[int] = 422):
        super().__init__(detail, status_code)


class NoActiveConversationError(RejectionError):
    """Exception ketika belum ada percakapan yang dibuka."""

    default_detail = "Belum ada percakapan yang dipilih."


class ResolutionMiss(ChatException):
    """
    Exception ketika detail ibu hamil tidak tersedia.

    Bukan error bagi pengguna: resolver menyimpannya sebagai hasil kosong
    dan tampilan memakai nama cadangan.
    """

    default_detail = "Detail ibu hamil tidak ditemukan."


__all__ = [
    "ChatException",
    "TransportError",
    "InvalidResponseError",
    "RejectionError",
    "NotAuthorizedError",
    "NotFoundError",
    "InvalidMessageError",
    "NoActiveConversationError",
    "ResolutionMiss",
]

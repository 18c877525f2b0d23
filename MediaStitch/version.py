# 18.10.26

__title__ = 'MediaStitch'
__version__ = '1.0.0'
__author__ = 'MediaStitch contributors'
__description__ = 'Reassemble HLS and DASH streams into local media files'

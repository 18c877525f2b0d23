# 18.10.26
